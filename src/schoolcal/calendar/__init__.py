"""Calendar sources, caching and the aggregation service.

Import concrete names from the submodules, e.g.
``from schoolcal.calendar.service import CalendarService``.
"""
