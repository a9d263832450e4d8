"""
The fixed set of router operations and where each one runs.
"""

from enum import Enum

from beacon.queries import params as p


class Operation(str, Enum):
    GET_WEBSITE = "get_website"
    RESOLVE_SESSION = "resolve_session"
    SAVE_SESSION_DATA = "save_session_data"
    SAVE_EVENT = "save_event"
    WEBSITE_STATS = "website_stats"
    PAGEVIEW_SERIES = "pageview_series"
    VISITOR_SERIES = "visitor_series"
    EVENT_SERIES = "event_series"
    PAGE_METRICS = "page_metrics"
    SESSION_METRICS = "session_metrics"
    EVENT_PROPERTY_FIELDS = "event_property_fields"
    EVENT_PROPERTY_BREAKDOWN = "event_property_breakdown"
    FUNNEL = "funnel"
    ACTIVE_VISITORS = "active_visitors"
    SESSION_LIST = "session_list"


class Placement(str, Enum):
    RELATIONAL = "relational"   # always the relational store
    ANALYTICS = "analytics"     # columnar when attached, relational otherwise
    SPLIT = "split"             # metadata from relational, volume from columnar


# operation -> (placement, parameter model)
OPERATIONS: dict[Operation, tuple[Placement, type]] = {
    Operation.GET_WEBSITE: (Placement.RELATIONAL, p.WebsiteLookup),
    Operation.RESOLVE_SESSION: (Placement.RELATIONAL, p.SessionResolve),
    Operation.SAVE_SESSION_DATA: (Placement.RELATIONAL, p.SessionDataWrite),
    Operation.SAVE_EVENT: (Placement.ANALYTICS, p.EventWrite),
    Operation.WEBSITE_STATS: (Placement.ANALYTICS, p.QueryParams),
    Operation.PAGEVIEW_SERIES: (Placement.ANALYTICS, p.SeriesParams),
    Operation.VISITOR_SERIES: (Placement.ANALYTICS, p.SeriesParams),
    Operation.EVENT_SERIES: (Placement.ANALYTICS, p.SeriesParams),
    Operation.PAGE_METRICS: (Placement.ANALYTICS, p.PageMetricParams),
    Operation.SESSION_METRICS: (Placement.ANALYTICS, p.SessionMetricParams),
    Operation.EVENT_PROPERTY_FIELDS: (Placement.ANALYTICS, p.PropertyParams),
    Operation.EVENT_PROPERTY_BREAKDOWN: (Placement.ANALYTICS, p.PropertyBreakdownParams),
    Operation.FUNNEL: (Placement.ANALYTICS, p.FunnelParams),
    Operation.ACTIVE_VISITORS: (Placement.ANALYTICS, p.ActiveParams),
    Operation.SESSION_LIST: (Placement.SPLIT, p.SessionListParams),
}
