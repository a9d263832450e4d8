"""
Collect service — turns one tracker request into session and event writes.

Order: validate → filter bots / ignored IPs → look up website →
resolve session → classify → write.  Nothing touches a store until the
payload has passed validation.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError

from beacon.config import Settings
from beacon.errors import StoreError, ValidationError, validation_details
from beacon.models import EventType
from beacon.queries.operations import Operation
from beacon.queries.params import EventWrite, SessionDataWrite, SessionResolve, WebsiteLookup
from beacon.queries.router import QueryRouter
from beacon.schemas import CollectRequest, CollectResponse
from beacon.services import identity
from beacon.services.client_info import get_client_info, is_bot, split_referrer, split_url
from beacon.services.event_data import build_fields

logger = logging.getLogger("beacon.ingest")

CACHE_HEADER = "x-beacon-cache"


class CollectService:
    def __init__(self, router: QueryRouter, config: Settings):
        self.router = router
        self.config = config

    def parse(self, body: bytes) -> CollectRequest:
        if len(body) > self.config.max_payload_bytes:
            raise ValidationError(
                f"Payload exceeds {self.config.max_payload_bytes} bytes",
                code="PAYLOAD_TOO_LARGE",
            )
        try:
            return CollectRequest.model_validate_json(body)
        except PydanticValidationError as e:
            raise ValidationError("Invalid collect payload", detail=validation_details(e)) from e

    async def collect(self, body: bytes, headers, peer: str | None = None) -> CollectResponse:
        request = self.parse(body)
        payload = request.payload
        fields = build_fields(payload.data, self.config.max_event_properties)
        now = datetime.now(timezone.utc)
        created_at = self._event_time(payload.timestamp, now)

        client = get_client_info(headers, peer, payload.screen, self.config.client_ip_header)
        if not self.config.disable_bot_check and is_bot(client.user_agent):
            logger.debug("Dropping bot traffic for %s", payload.website)
            return CollectResponse(disabled=True)
        if client.ip and client.ip in self.config.ignored_ip_set:
            return CollectResponse(disabled=True)

        website = await self.router.execute(Operation.GET_WEBSITE, WebsiteLookup(website_id=payload.website))
        if website is None:
            logger.info("Collect for unknown or deleted website %s", payload.website)
            return CollectResponse(disabled=True)

        window = identity.session_window(created_at, self.config.session_window_minutes)
        token = identity.verify_token(headers.get(CACHE_HEADER), self.config.app_secret)
        # a token from another website or an earlier session window cannot keep its session
        if token and (
            token.website_id != website.id
            or token.session_expired(created_at, self.config.session_window_minutes)
        ):
            token = None

        event_type = "identify" if request.type == "identify" else ("custom" if payload.name else "pageview")
        try:
            session = self._session_for(payload, client, created_at, website.id, window)
            if token:
                session_id = token.session_id
                visit_id = (
                    identity.new_visit_id()
                    if token.visit_expired(now, self.config.visit_timeout_minutes)
                    else token.visit_id
                )
            else:
                session_id = await self.router.execute(Operation.RESOLVE_SESSION, session)
                visit_id = identity.new_visit_id()
            session = session.model_copy(update={"id": session_id})

            if request.type == "identify":
                if fields:
                    await self.router.execute(Operation.SAVE_SESSION_DATA, SessionDataWrite(
                        website_id=website.id,
                        session_id=session_id,
                        created_at=created_at,
                        data=fields,
                    ))
            else:
                await self.router.execute(Operation.SAVE_EVENT, self._event(payload, session, visit_id, created_at, fields))
        except StoreError as e:
            logger.error("❌ Collect failed for website %s (%s): %s", website.id, event_type, e)
            raise

        cache = identity.sign_token(
            identity.CacheToken(
                website_id=website.id,
                session_id=session_id,
                visit_id=visit_id,
                window=window,
                iat=int(now.timestamp()),
            ),
            self.config.app_secret,
        )
        return CollectResponse(cache=cache)

    def _event_time(self, timestamp: int | None, now: datetime) -> datetime:
        """Payload timestamp as UTC, bounded to [now - max age, now + clock skew]."""
        if not timestamp:
            return now
        received = int(now.timestamp())
        if timestamp > received + self.config.max_clock_skew_minutes * 60:
            raise ValidationError(
                "Event timestamp is in the future",
                detail=[{"loc": ["payload", "timestamp"], "msg": f"later than {received} + clock skew"}],
                code="INVALID_TIMESTAMP",
            )
        max_age = self.config.max_event_age_days
        if max_age and timestamp < received - max_age * 86400:
            raise ValidationError(
                "Event timestamp is too old",
                detail=[{"loc": ["payload", "timestamp"], "msg": f"older than {max_age} days"}],
                code="INVALID_TIMESTAMP",
            )
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)

    def _session_for(self, payload, client, created_at: datetime, website_id: str, window: int) -> SessionResolve:
        fp = identity.fingerprint(website_id, client.ip, client.user_agent, payload.id, salt=self.config.app_secret)
        return SessionResolve(
            id=identity.session_id(website_id, fp, window),
            website_id=website_id,
            fingerprint=fp,
            distinct_id=payload.id,
            hostname=payload.hostname,
            browser=client.browser,
            os=client.os,
            device=client.device,
            screen=payload.screen,
            language=payload.language,
            country=client.country,
            created_at=created_at,
        )

    @staticmethod
    def _event(payload, session: SessionResolve, visit_id: str, created_at: datetime, fields) -> EventWrite:
        url_path, url_query = split_url(payload.url)
        referrer_path, referrer_query, referrer_domain = split_referrer(payload.referrer, payload.hostname)
        return EventWrite(
            id=str(uuid.uuid4()),
            website_id=session.website_id,
            session_id=session.id,
            visit_id=visit_id,
            created_at=created_at,
            event_type=EventType.CUSTOM if payload.name else EventType.PAGE_VIEW,
            event_name=payload.name,
            url_path=url_path,
            url_query=url_query,
            referrer_path=referrer_path,
            referrer_query=referrer_query,
            referrer_domain=referrer_domain,
            page_title=payload.title,
            hostname=payload.hostname,
            tag=payload.tag,
            data=fields if payload.name else [],
            session=session,
        )
