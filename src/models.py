"""
Shared types for stream resolution and playback.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    """Provider kinds a stream can come from"""
    XTREAM = "xtream"
    M3U = "m3u"


class DeliveryMode(str, Enum):
    DIRECT = "direct"
    RELAYED = "relayed"
    TRANSCODED = "transcoded"


class PlaybackPath(str, Enum):
    """How the player consumes a URL"""
    ADAPTIVE = "adaptive"  # HLS engine attached to the media element
    NATIVE = "native"      # media element with built-in HLS support
    ELEMENT = "element"    # plain progressive playback


@dataclass(frozen=True)
class StreamDescriptor:
    url: str
    source_type: SourceType = SourceType.M3U
    stream_id: Optional[str] = None
    # Declared container, e.g. "m3u8" for a manifest, "ts"/"mp4" for a file
    container: Optional[str] = None
    # Display and guide lookup
    name: Optional[str] = None
    tvg_id: Optional[str] = None
    source_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or "Unknown Channel"


class PlayerSettings(BaseModel):
    """
    Read-only snapshot of the player settings owned by the settings store.
    Keys follow the store's camelCase names.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    force_proxy: bool = Field(False, alias="forceProxy")
    force_transcode: bool = Field(False, alias="forceTranscode")
    force_remux: bool = Field(False, alias="forceRemux")
    stream_format: str = Field("m3u8", alias="streamFormat")
    arrow_keys_change_channel: bool = Field(True, alias="arrowKeysChangeChannel")
    overlay_duration: int = Field(5, alias="overlayDuration")
    default_volume: int = Field(80, alias="defaultVolume", ge=0, le=100)
    remember_volume: bool = Field(True, alias="rememberVolume")
    last_volume: int = Field(80, alias="lastVolume", ge=0, le=100)
    auto_play_next_episode: bool = Field(False, alias="autoPlayNextEpisode")

    @property
    def start_volume(self) -> float:
        """Volume to apply when the player starts, as 0..1"""
        volume = self.last_volume if self.remember_volume else self.default_volume
        return volume / 100


class EscalationOrder(tuple):
    """Ordered, duplicate-free sequence of delivery modes"""

    def __new__(cls, modes):
        modes = tuple(DeliveryMode(m) for m in modes)
        if not modes:
            raise ValueError("Escalation order cannot be empty")
        if len(set(modes)) != len(modes):
            raise ValueError(f"Escalation order repeats a mode: {modes}")
        return super().__new__(cls, modes)

    def __repr__(self):
        return f"EscalationOrder({[m.value for m in self]})"


@dataclass(frozen=True)
class Resolution:
    initial_mode: DeliveryMode
    order: EscalationOrder
    # URL the player should load for each delivery mode
    urls: Dict[DeliveryMode, str] = field(default_factory=dict)
    # Container hint after applying settings defaults
    container: Optional[str] = None

    def url_for(self, mode: DeliveryMode) -> str:
        return self.urls[mode]


@dataclass(frozen=True)
class MediaStatus:
    """Snapshot of the media element at the time an event is handled"""
    paused: bool = True
    position: float = 0.0

    @property
    def is_advancing(self) -> bool:
        return not self.paused and self.position > 0


@dataclass(frozen=True)
class PlayerCapabilities:
    adaptive_supported: bool = True
    native_hls: bool = False


