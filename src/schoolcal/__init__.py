"""School calendar aggregation core."""
