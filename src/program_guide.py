"""
Program guide lookups for the now-playing display.

The guide data itself is parsed and stored elsewhere; this module only answers
"what is on this channel right now, and what comes next".
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import httpx

from config import settings
from models import SourceType, StreamDescriptor

logger = logging.getLogger(__name__)

UPCOMING_LIMIT = 5


@dataclass(frozen=True)
class Programme:
    title: str
    start: datetime
    stop: datetime
    description: str = ""

    def is_airing(self, at: datetime) -> bool:
        return self.start <= at < self.stop


@dataclass(frozen=True)
class NowPlaying:
    current: Optional[Programme] = None
    upcoming: List[Programme] = field(default_factory=list)


@dataclass(frozen=True)
class GuideChannel:
    id: str
    name: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _select(programmes: Iterable[Programme], now: datetime) -> Optional[NowPlaying]:
    ordered = sorted(programmes, key=lambda p: p.start)
    current = next((p for p in ordered if p.is_airing(now)), None)
    upcoming = [p for p in ordered if p.start >= now][:UPCOMING_LIMIT]
    if current is None and not upcoming:
        return None
    return NowPlaying(current=current, upcoming=upcoming)


class GuideIndex:
    """In-memory guide: channels and their programmes keyed by channel id"""

    def __init__(self, channels: Iterable[GuideChannel] = (),
                 programmes: Optional[Dict[str, List[Programme]]] = None):
        self.programmes: Dict[str, List[Programme]] = dict(programmes or {})
        self._by_name: Dict[str, str] = {}
        for channel in channels:
            if channel.name:
                self._by_name.setdefault(channel.name.lower(), channel.id)

    def channel_id_for(self, descriptor: StreamDescriptor) -> Optional[str]:
        # tvg-id first, then display name
        if descriptor.tvg_id and descriptor.tvg_id in self.programmes:
            return descriptor.tvg_id
        if descriptor.name:
            return self._by_name.get(descriptor.name.lower())
        return None

    def now_playing(self, descriptor: StreamDescriptor,
                    now: Optional[datetime] = None) -> Optional[NowPlaying]:
        channel_id = self.channel_id_for(descriptor)
        if channel_id is None:
            return None
        return _select(self.programmes.get(channel_id, []), now or _utcnow())


def _decode(value: Optional[str]) -> str:
    """Xtream short EPG titles and descriptions are base64 encoded"""
    if not value:
        return ""
    try:
        return base64.b64decode(value).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError, TypeError):
        return str(value)


def _parse_timestamp(value) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class XtreamShortEpg:
    """Fallback lookup against an Xtream provider's short EPG endpoint"""

    def __init__(self, server: str, username: str, password: str,
                 http_client: Optional[httpx.Client] = None):
        self.server = server.rstrip("/")
        self.username = username
        self.password = password
        self.http_client = http_client or httpx.Client(
            timeout=httpx.Timeout(settings.DEFAULT_READ_TIMEOUT,
                                  connect=settings.DEFAULT_CONNECTION_TIMEOUT),
            follow_redirects=True,
            headers={"User-Agent": settings.DEFAULT_USER_AGENT},
        )

    def fetch(self, stream_id: str) -> List[Programme]:
        response = self.http_client.get(
            f"{self.server}/player_api.php",
            params={
                "username": self.username,
                "password": self.password,
                "action": "get_short_epg",
                "stream_id": stream_id,
            },
        )
        response.raise_for_status()
        data = response.json()
        # Unknown streams come back as an empty list instead of an object
        listings = data.get("epg_listings") if isinstance(data, dict) else None
        if not isinstance(listings, list):
            return []

        programmes = []
        for item in listings:
            if not isinstance(item, dict):
                continue
            start = _parse_timestamp(item.get("start_timestamp"))
            stop = _parse_timestamp(item.get("stop_timestamp"))
            if start is None or stop is None:
                continue
            programmes.append(Programme(
                title=_decode(item.get("title")),
                start=start,
                stop=stop,
                description=_decode(item.get("description")),
            ))
        return programmes

    def now_playing(self, descriptor: StreamDescriptor,
                    now: Optional[datetime] = None) -> Optional[NowPlaying]:
        if descriptor.source_type != SourceType.XTREAM or not descriptor.stream_id:
            return None
        return _select(self.fetch(descriptor.stream_id), now or _utcnow())

    def close(self):
        self.http_client.close()


class ProgramGuide:
    """Index first, then the Xtream short EPG of the descriptor's source"""

    def __init__(self, index: Optional[GuideIndex] = None,
                 xtream_sources: Optional[Dict[str, XtreamShortEpg]] = None):
        self.index = index or GuideIndex()
        self.xtream_sources = dict(xtream_sources or {})

    def now_playing(self, descriptor: StreamDescriptor,
                    now: Optional[datetime] = None) -> Optional[NowPlaying]:
        try:
            result = self.index.now_playing(descriptor, now)
            if result is not None:
                return result

            source = self.xtream_sources.get(descriptor.source_id)
            if source is not None:
                return source.now_playing(descriptor, now)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Program info lookup failed for {descriptor.display_name}: {e}")
        return None
