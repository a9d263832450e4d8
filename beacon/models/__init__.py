from beacon.models.website import Website  # noqa: F401
from beacon.models.session import VisitorSession, SessionData  # noqa: F401
from beacon.models.event import WebsiteEvent, EventData, EventType, DataType  # noqa: F401
