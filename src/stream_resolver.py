"""
Stream Resolver

Picks the delivery mode a stream should start with and the order in which
the player escalates when a mode fails. Resolution only depends on the
descriptor and the settings snapshot passed in.
"""

import logging
from typing import Iterable, Optional, Sequence
from urllib.parse import quote, urlparse

from config import settings
from models import (
    DeliveryMode,
    EscalationOrder,
    PlaybackPath,
    PlayerCapabilities,
    PlayerSettings,
    Resolution,
    SourceType,
    StreamDescriptor,
)

logger = logging.getLogger(__name__)

RELAY_ROUTE = "/stream/relay"
TRANSCODE_ROUTE = "/stream/transcode"


def host_matches(url: str, domains: Iterable[str]) -> bool:
    """True when the URL host is one of the domains or a subdomain of one"""
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False
    for domain in domains:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False


class StreamResolver:
    def __init__(
        self,
        hostile_domains: Optional[Sequence[str]] = None,
        base_path: Optional[str] = None,
        hls_markers: Optional[Sequence[str]] = None,
        file_markers: Optional[Sequence[str]] = None,
    ):
        self.hostile_domains = list(
            settings.CORS_HOSTILE_DOMAINS if hostile_domains is None else hostile_domains)
        self.base_path = (settings.ROOT_PATH if base_path is None else base_path).rstrip("/")
        self.hls_markers = list(
            settings.HLS_URL_MARKERS if hls_markers is None else hls_markers)
        self.file_markers = list(
            settings.FILE_URL_MARKERS if file_markers is None else file_markers)

    def resolve(self, descriptor: StreamDescriptor, player_settings: PlayerSettings) -> Resolution:
        """Compute the initial mode and escalation order for one playback attempt"""
        if player_settings.force_transcode:
            order = EscalationOrder([DeliveryMode.TRANSCODED])
            reason = "force transcode"
        elif player_settings.force_proxy or host_matches(descriptor.url, self.hostile_domains):
            order = EscalationOrder([DeliveryMode.RELAYED])
            reason = "force proxy" if player_settings.force_proxy else "cors-hostile origin"
        else:
            order = EscalationOrder([DeliveryMode.DIRECT, DeliveryMode.RELAYED])
            reason = "default"

        container = descriptor.container
        if not container and descriptor.source_type == SourceType.XTREAM:
            container = player_settings.stream_format

        urls = {mode: self.build_url(mode, descriptor.url) for mode in order}
        # Transcoding stays reachable as the codec fallback
        urls.setdefault(DeliveryMode.TRANSCODED,
                        self.build_url(DeliveryMode.TRANSCODED, descriptor.url))

        logger.debug(
            f"Resolved {descriptor.url} ({reason}): order={[m.value for m in order]}")
        return Resolution(
            initial_mode=order[0],
            order=order,
            urls=urls,
            container=container,
        )

    def build_url(self, mode: DeliveryMode, origin_url: str) -> str:
        if mode == DeliveryMode.DIRECT:
            return origin_url
        encoded = quote(origin_url, safe="")
        if mode == DeliveryMode.RELAYED:
            return f"{self.base_path}{RELAY_ROUTE}?url={encoded}"
        return f"{self.base_path}{TRANSCODE_ROUTE}?url={encoded}"

    def looks_like_hls(self, url: str, container: Optional[str] = None) -> bool:
        """Heuristic manifest detection; a declared container wins over sniffing"""
        if container:
            return container.lower().lstrip(".") in ("m3u8", "m3u", "hls")
        if any(marker in url for marker in self.hls_markers):
            return True
        return not any(marker in url for marker in self.file_markers)

    def choose_playback_path(
        self,
        url: str,
        mode: DeliveryMode,
        container: Optional[str] = None,
        capabilities: Optional[PlayerCapabilities] = None,
    ) -> PlaybackPath:
        """
        Adaptive engine first, then native HLS, then plain element playback.
        Transcoded output is fragmented MP4 and always plays on the element.
        """
        if mode == DeliveryMode.TRANSCODED:
            return PlaybackPath.ELEMENT
        capabilities = capabilities or PlayerCapabilities()
        is_hls = self.looks_like_hls(url, container)
        if is_hls and capabilities.adaptive_supported:
            return PlaybackPath.ADAPTIVE
        if capabilities.native_hls:
            return PlaybackPath.NATIVE
        return PlaybackPath.ELEMENT


def next_mode(
    resolution: Resolution,
    attempted: Iterable[DeliveryMode],
    codec_failure: bool = False,
) -> Optional[DeliveryMode]:
    """
    Next mode to escalate to, or None when everything has been tried.
    Codec failures skip the rest of the order and go straight to transcoding.
    """
    attempted = set(attempted)
    if not codec_failure:
        for mode in resolution.order:
            if mode not in attempted:
                return mode
    if DeliveryMode.TRANSCODED not in attempted:
        return DeliveryMode.TRANSCODED
    return None


_default_resolver: Optional[StreamResolver] = None


def get_resolver() -> StreamResolver:
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = StreamResolver()
    return _default_resolver


def resolve(descriptor: StreamDescriptor, player_settings: PlayerSettings) -> Resolution:
    return get_resolver().resolve(descriptor, player_settings)
