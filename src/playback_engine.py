"""
Playback Engine

Client-side state machine that drives the adaptive-streaming engine (or plain
media element playback) for one selected stream. It interprets engine events,
applies local recovery, and escalates the delivery mode when recovery is not
possible.

The state machine itself is a pure function of (session, event, media status)
returning the next session plus a list of effects. ``PlaybackEngine`` is the
thin driver that executes those effects against a media backend on the same
thread that delivers events.
"""

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

from models import (
    DeliveryMode,
    MediaStatus,
    PlaybackPath,
    PlayerCapabilities,
    PlayerSettings,
    Resolution,
    StreamDescriptor,
)
from stream_resolver import StreamResolver, get_resolver, next_mode

logger = logging.getLogger(__name__)


class PlaybackState(str, Enum):
    IDLE = "idle"
    ATTACHING = "attaching"
    PLAYING = "playing"
    RECOVERING = "recovering"
    ESCALATING = "escalating"
    FAILED = "failed"


class ErrorKind(str, Enum):
    # Values mirror the adaptive engine's error type names
    NETWORK = "networkError"
    MEDIA = "mediaError"
    OTHER = "otherError"


FRAG_PARSING_ERROR = "fragParsingError"
BUFFER_STALLED_ERROR = "bufferStalledError"
BUFFER_APPEND_ERROR = "bufferAppendError"
INIT_SEGMENT = "initSegment"

SYNC_NUDGE_SECONDS = 0.01
DISCONTINUITY_SKIP_SECONDS = 1.0

ERROR_MESSAGE = "Failed to play channel"


# ----------------------------------------------------------------------------
# Events delivered to the state machine
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class PlayRequested:
    descriptor: StreamDescriptor
    settings: PlayerSettings = field(default_factory=PlayerSettings)


@dataclass(frozen=True)
class ManifestParsed:
    pass


@dataclass(frozen=True)
class MediaStarted:
    """First frame rendered by native or plain element playback"""
    pass


@dataclass(frozen=True)
class EngineError:
    kind: ErrorKind
    fatal: bool = False
    details: Optional[str] = None


@dataclass(frozen=True)
class FragmentChanged:
    continuity: Optional[int]
    sequence: Optional[object] = None


@dataclass(frozen=True)
class StopRequested:
    pass


# ----------------------------------------------------------------------------
# Effects requested by the state machine
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class Detach:
    pass


@dataclass(frozen=True)
class Attach:
    mode: DeliveryMode
    url: str
    path: PlaybackPath
    attachment: int


@dataclass(frozen=True)
class StartPlayback:
    pass


@dataclass(frozen=True)
class RecoverMediaError:
    pass


@dataclass(frozen=True)
class Nudge:
    seconds: float


@dataclass(frozen=True)
class ShowNowPlaying:
    descriptor: StreamDescriptor


@dataclass(frozen=True)
class LoadProgramInfo:
    descriptor: StreamDescriptor


@dataclass(frozen=True)
class NotifyPlaybackChanged:
    descriptor: StreamDescriptor
    mode: DeliveryMode


@dataclass(frozen=True)
class ShowError:
    message: str


@dataclass(frozen=True)
class PlaybackSession:
    state: PlaybackState = PlaybackState.IDLE
    descriptor: Optional[StreamDescriptor] = None
    settings: Optional[PlayerSettings] = None
    resolution: Optional[Resolution] = None
    mode: Optional[DeliveryMode] = None
    path: Optional[PlaybackPath] = None
    attempted: Tuple[DeliveryMode, ...] = ()
    escalations: int = 0
    # Monotonic id of the current engine attachment
    attachment: int = 0
    # Continuity counter of the last fragment seen on this attachment
    last_continuity: Optional[int] = None
    # Engine recovery was issued for a fatal media error and no progress since
    recovery_pending: bool = False

    @property
    def is_attached(self) -> bool:
        return self.mode is not None and self.state not in (
            PlaybackState.IDLE, PlaybackState.FAILED)


@dataclass(frozen=True)
class Transition:
    session: PlaybackSession
    effects: Tuple[object, ...] = ()
    # States traversed while handling the event, in order
    states: Tuple[PlaybackState, ...] = ()


class PlaybackStateMachine:
    """Pure transition logic; holds only configuration"""

    def __init__(self, resolver: Optional[StreamResolver] = None,
                 capabilities: Optional[PlayerCapabilities] = None):
        self.resolver = resolver or get_resolver()
        self.capabilities = capabilities or PlayerCapabilities()

    def transition(self, session: PlaybackSession, event,
                   media: Optional[MediaStatus] = None) -> Transition:
        media = media or MediaStatus()
        if isinstance(event, PlayRequested):
            return self._on_play(session, event)
        if isinstance(event, StopRequested):
            return self._on_stop(session)
        if session.state in (PlaybackState.IDLE, PlaybackState.FAILED):
            return Transition(session)
        if isinstance(event, (ManifestParsed, MediaStarted)):
            return self._on_ready(session, event)
        if isinstance(event, FragmentChanged):
            return self._on_fragment(session, event, media)
        if isinstance(event, EngineError):
            return self._on_error(session, event, media)
        logger.debug(f"Ignoring unknown playback event {event!r}")
        return Transition(session)

    # -- lifecycle ----------------------------------------------------------

    def _on_play(self, session: PlaybackSession, event: PlayRequested) -> Transition:
        effects: List[object] = []
        if session.is_attached:
            effects.append(Detach())

        resolution = self.resolver.resolve(event.descriptor, event.settings)
        fresh = PlaybackSession(
            descriptor=event.descriptor,
            settings=event.settings,
            resolution=resolution,
            attachment=session.attachment,
        )
        attached, attach = self._attach(fresh, resolution.initial_mode)
        effects.append(attach)
        logger.info(
            f"Playing {event.descriptor.display_name} via {resolution.initial_mode.value} "
            f"(order: {[m.value for m in resolution.order]})")
        return Transition(attached, tuple(effects), (PlaybackState.ATTACHING,))

    def _on_stop(self, session: PlaybackSession) -> Transition:
        effects = (Detach(),) if session.is_attached else ()
        return Transition(
            PlaybackSession(attachment=session.attachment + 1),
            effects,
            (PlaybackState.IDLE,),
        )

    def _attach(self, session: PlaybackSession, mode: DeliveryMode) -> Tuple[PlaybackSession, Attach]:
        url = session.resolution.url_for(mode)
        path = self.resolver.choose_playback_path(
            url, mode, session.resolution.container, self.capabilities)
        attachment = session.attachment + 1
        session = replace(
            session,
            state=PlaybackState.ATTACHING,
            mode=mode,
            path=path,
            attempted=session.attempted + (mode,),
            attachment=attachment,
            last_continuity=None,
            recovery_pending=False,
        )
        return session, Attach(mode=mode, url=url, path=path, attachment=attachment)

    def _on_ready(self, session: PlaybackSession, event) -> Transition:
        if session.state != PlaybackState.ATTACHING:
            return Transition(session)
        effects: List[object] = []
        if isinstance(event, ManifestParsed):
            effects.append(StartPlayback())
        effects.extend([
            ShowNowPlaying(session.descriptor),
            LoadProgramInfo(session.descriptor),
            NotifyPlaybackChanged(session.descriptor, session.mode),
        ])
        logger.info(
            f"Playback started for {session.descriptor.display_name} ({session.mode.value})")
        return Transition(
            replace(session, state=PlaybackState.PLAYING),
            tuple(effects),
            (PlaybackState.PLAYING,),
        )

    # -- recovery -----------------------------------------------------------

    def _on_fragment(self, session: PlaybackSession, event: FragmentChanged,
                     media: MediaStatus) -> Transition:
        if event.continuity is None or event.sequence == INIT_SEGMENT:
            return Transition(session)

        # A new fragment means playback is progressing again
        updated = replace(session, recovery_pending=False,
                          last_continuity=event.continuity)
        if session.last_continuity is None or event.continuity == session.last_continuity:
            return Transition(updated)

        logger.info(
            f"Discontinuity detected: CC {session.last_continuity} -> {event.continuity}")
        if session.state != PlaybackState.PLAYING or not media.is_advancing:
            return Transition(updated)
        return Transition(
            updated,
            (Nudge(DISCONTINUITY_SKIP_SECONDS),),
            (PlaybackState.RECOVERING, session.state),
        )

    def _on_error(self, session: PlaybackSession, event: EngineError,
                  media: MediaStatus) -> Transition:
        if not event.fatal:
            return self._on_recoverable_error(session, event, media)

        logger.warning(
            f"Fatal {event.kind.value} ({event.details}) in {session.mode.value} mode "
            f"for {session.descriptor.display_name}")

        if session.mode == DeliveryMode.TRANSCODED:
            return self._fail(session, "fatal error while transcoded")

        cors_like = event.kind == ErrorKind.NETWORK or (
            event.kind == ErrorKind.MEDIA
            and event.details == FRAG_PARSING_ERROR
            and session.mode == DeliveryMode.DIRECT
        )
        if cors_like:
            target = next_mode(session.resolution, session.attempted)
            return self._escalate(session, target, "transport")

        if (event.kind == ErrorKind.MEDIA and session.path == PlaybackPath.ADAPTIVE
                and not session.recovery_pending):
            logger.info("Media error, attempting engine recovery")
            return Transition(
                replace(session, recovery_pending=True),
                (RecoverMediaError(),),
                (PlaybackState.RECOVERING, session.state),
            )

        target = next_mode(session.resolution, session.attempted, codec_failure=True)
        return self._escalate(session, target, "decode")

    def _on_recoverable_error(self, session: PlaybackSession, event: EngineError,
                              media: MediaStatus) -> Transition:
        decoder_event = event.kind == ErrorKind.MEDIA or event.details in (
            BUFFER_APPEND_ERROR, FRAG_PARSING_ERROR, BUFFER_STALLED_ERROR)
        if not decoder_event:
            logger.debug(f"Non-fatal {event.kind.value}: {event.details}")
            return Transition(session)

        if event.details == BUFFER_STALLED_ERROR:
            action = Nudge(DISCONTINUITY_SKIP_SECONDS) if media.is_advancing else None
        elif session.path == PlaybackPath.ADAPTIVE:
            action = RecoverMediaError()
        else:
            action = Nudge(SYNC_NUDGE_SECONDS) if media.is_advancing else None

        if action is None:
            logger.debug(f"Skipping recovery for {event.details}: media not advancing")
            return Transition(session)
        logger.info(f"Non-fatal {event.details or event.kind.value}, recovering with {action}")
        return Transition(session, (action,), (PlaybackState.RECOVERING, session.state))

    # -- escalation ---------------------------------------------------------

    def _escalate(self, session: PlaybackSession, target: Optional[DeliveryMode],
                  classification: str) -> Transition:
        if target is None:
            return self._fail(session, f"{classification} error, no modes left")

        logger.warning(
            f"Escalating {session.descriptor.display_name}: "
            f"{session.mode.value} -> {target.value} ({classification})")
        escalated = replace(session, escalations=session.escalations + 1)
        attached, attach = self._attach(escalated, target)
        return Transition(
            attached,
            (Detach(), attach),
            (PlaybackState.ESCALATING, PlaybackState.ATTACHING),
        )

    def _fail(self, session: PlaybackSession, reason: str) -> Transition:
        logger.error(
            f"Playback failed for {session.descriptor.display_name} after "
            f"{[m.value for m in session.attempted]}: {reason}")
        return Transition(
            replace(session, state=PlaybackState.FAILED),
            (Detach(), ShowError(ERROR_MESSAGE)),
            (PlaybackState.FAILED,),
        )


class PlaybackEngine:
    """
    Executes state machine effects against a media backend.

    ``backend`` provides ``attach(url, path, on_event)`` returning an
    attachment handle (``recover_media_error()``, ``destroy()``), plus
    ``play()``, ``nudge(seconds)``, ``status()``, ``set_volume(volume)`` and
    ``reset()``. ``view`` provides ``show_now_playing(descriptor, now_playing)``
    and ``show_error(message)``. ``guide`` provides ``now_playing(descriptor)``.
    """

    def __init__(
        self,
        backend,
        view=None,
        guide=None,
        on_playback_changed: Optional[Callable[[StreamDescriptor, DeliveryMode], None]] = None,
        machine: Optional[PlaybackStateMachine] = None,
        player_settings: Optional[PlayerSettings] = None,
    ):
        self.backend = backend
        self.view = view
        self.guide = guide
        self.on_playback_changed = on_playback_changed
        self.machine = machine or PlaybackStateMachine()
        self.session = PlaybackSession()
        self.history: List[PlaybackState] = []
        self._attachment = None
        self._queue = deque()
        self._dispatching = False

        if player_settings is not None:
            self.backend.set_volume(player_settings.start_volume)

    @property
    def state(self) -> PlaybackState:
        return self.session.state

    def play(self, descriptor: StreamDescriptor, player_settings: Optional[PlayerSettings] = None):
        self.dispatch(PlayRequested(descriptor, player_settings or PlayerSettings()))

    def stop(self):
        self.dispatch(StopRequested())

    def dispatch(self, event, attachment: Optional[int] = None):
        """
        Deliver an event. Events tagged with an attachment id that is no
        longer current are dropped.
        """
        self._queue.append((event, attachment))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                queued, tag = self._queue.popleft()
                self._handle(queued, tag)
        finally:
            self._dispatching = False

    def _handle(self, event, attachment: Optional[int]):
        if attachment is not None and attachment != self.session.attachment:
            logger.debug(f"Dropping {event!r} from stale attachment {attachment}")
            return
        result = self.machine.transition(self.session, event, self.backend.status())
        self.session = result.session
        self.history.extend(result.states)
        for effect in result.effects:
            self._apply(effect)

    def _apply(self, effect):
        if isinstance(effect, Detach):
            if self._attachment is not None:
                self._attachment.destroy()
                self._attachment = None
            self.backend.reset()
        elif isinstance(effect, Attach):
            attachment_id = effect.attachment
            self._attachment = self.backend.attach(
                effect.url, effect.path,
                lambda event, tag=attachment_id: self.dispatch(event, tag))
            if effect.path != PlaybackPath.ADAPTIVE:
                self._start_playback()
        elif isinstance(effect, StartPlayback):
            self._start_playback()
        elif isinstance(effect, RecoverMediaError):
            if self._attachment is not None:
                self._attachment.recover_media_error()
        elif isinstance(effect, Nudge):
            self.backend.nudge(effect.seconds)
        elif isinstance(effect, ShowNowPlaying):
            if self.view is not None:
                self.view.show_now_playing(effect.descriptor, None)
        elif isinstance(effect, LoadProgramInfo):
            self._load_program_info(effect.descriptor)
        elif isinstance(effect, NotifyPlaybackChanged):
            if self.on_playback_changed is not None:
                self.on_playback_changed(effect.descriptor, effect.mode)
        elif isinstance(effect, ShowError):
            if self.view is not None:
                self.view.show_error(effect.message)
        else:
            raise TypeError(f"Unknown playback effect: {effect!r}")

    def _start_playback(self):
        try:
            self.backend.play()
        except Exception as e:
            # play() rejects until the user has interacted with the page
            logger.info(f"Autoplay prevented: {e}")

    def _load_program_info(self, descriptor: StreamDescriptor):
        if self.guide is None:
            return
        now_playing = self.guide.now_playing(descriptor)
        if now_playing is not None and self.view is not None:
            self.view.show_now_playing(descriptor, now_playing)
