from fastapi import FastAPI, HTTPException, Query, Request, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import subprocess
from urllib.parse import urlparse
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, field_validator

from config import settings, VERSION
from models import (
    DeliveryMode,
    PlayerCapabilities,
    PlayerSettings,
    SourceType,
    StreamDescriptor,
)
from relay_manager import RelayManager, UpstreamUnavailable
from stream_resolver import get_resolver
from transcode_manager import TranscodeManager, TranscodeRejected, TranscodeStartError

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def get_ffmpeg_version() -> Optional[str]:
    """Get the ffmpeg version string"""
    try:
        result = subprocess.run(
            [settings.FFMPEG_PATH, '-version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        if result.returncode == 0:
            # Extract the version from first line (e.g., "ffmpeg version 6.1.1")
            first_line = result.stdout.split('\n')[0]
            return first_line.strip()
        return None
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Failed to get ffmpeg version: {e}")
        return None


def validate_url(url: str) -> str:
    """Validate URL format and security"""
    if not url or not url.strip():
        raise ValueError("URL cannot be empty")

    # Basic URL parsing validation
    try:
        parsed = urlparse(url)
    except ValueError:
        raise ValueError("Invalid URL format")

    # Ensure scheme is http or https
    if parsed.scheme.lower() not in ['http', 'https']:
        raise ValueError("URL must use HTTP or HTTPS protocol")

    # Ensure there's a valid netloc (domain)
    if not parsed.netloc:
        raise ValueError("URL must have a valid domain")

    # Additional security check for malicious URLs
    dangerous_patterns = ['<script', 'javascript:', 'data:', 'vbscript:']
    url_lower = url.lower()
    for pattern in dangerous_patterns:
        if pattern in url_lower:
            raise ValueError(f"URL contains dangerous pattern: {pattern}")

    return url


def require_stream_url(url: Optional[str]) -> str:
    """Validate the ?url= parameter of a stream route, 400 before any upstream work"""
    if url is None:
        raise HTTPException(status_code=400, detail="Missing url parameter")
    try:
        return validate_url(url)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid URL provided: {e}")


# Request models
class StreamDescriptorRequest(BaseModel):
    url: str
    source_type: SourceType = SourceType.M3U
    stream_id: Optional[str] = None
    container: Optional[str] = None
    name: Optional[str] = None
    tvg_id: Optional[str] = None
    source_id: Optional[str] = None

    @field_validator('url')
    @classmethod
    def validate_stream_url(cls, v):
        return validate_url(v)

    @field_validator('stream_id', mode='before')
    @classmethod
    def coerce_stream_id(cls, v):
        # Xtream ids arrive as numbers
        if v is not None:
            return str(v)
        return v

    def to_descriptor(self) -> StreamDescriptor:
        return StreamDescriptor(
            url=self.url,
            source_type=self.source_type,
            stream_id=self.stream_id,
            container=self.container,
            name=self.name,
            tvg_id=self.tvg_id,
            source_id=self.source_id,
        )


class CapabilitiesRequest(BaseModel):
    adaptive_supported: bool = True
    native_hls: bool = False


class ResolveRequest(BaseModel):
    descriptor: StreamDescriptorRequest
    settings: PlayerSettings = Field(default_factory=PlayerSettings)
    capabilities: CapabilitiesRequest = Field(default_factory=CapabilitiesRequest)


class ResolveResponse(BaseModel):
    initial_mode: DeliveryMode
    order: List[DeliveryMode]
    urls: Dict[str, str]
    playback_path: str
    container: Optional[str] = None


# Global relay and transcode managers
relay_manager = RelayManager()
transcode_manager = TranscodeManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("Stream engine starting up...")
    logger.info(
        f"CORS-hostile domains: {settings.CORS_HOSTILE_DOMAINS}, "
        f"transcode limit: {settings.MAX_CONCURRENT_TRANSCODES or 'unlimited'}")

    yield

    # Shutdown
    logger.info("Stream engine shutting down...")
    await transcode_manager.stop()
    await relay_manager.stop()


app = FastAPI(
    title="stream engine",
    version=VERSION,
    description="Stream relay, audio transcoding and playback resolution for browser IPTV players",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Configure CORS to allow all origins for streaming compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for maximum compatibility
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    Stream routes never require a token; media elements cannot send headers.
    """
    # If no API token is configured, skip authentication
    if not settings.API_TOKEN:
        return True

    # Check for token in either header or query parameter
    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


@app.get("/", dependencies=[Depends(verify_token)])
async def root():
    return {
        "status": "running",
        "message": "stream engine is running",
        "version": VERSION,
        "active_transcodes": transcode_manager.active_count,
    }


@app.get("/health", dependencies=[Depends(verify_token)])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "root_path": settings.ROOT_PATH,
        "version": VERSION,
        "active_transcodes": transcode_manager.active_count,
    }


@app.get("/info", dependencies=[Depends(verify_token)])
async def get_info():
    """
    Get information about the server configuration: resolution policy,
    transcoding limits and the ffmpeg build in use.
    """
    return {
        "version": VERSION,
        "ffmpeg_version": get_ffmpeg_version(),
        "resolution": {
            "cors_hostile_domains": settings.CORS_HOSTILE_DOMAINS,
            "hls_url_markers": settings.HLS_URL_MARKERS,
            "file_url_markers": settings.FILE_URL_MARKERS,
        },
        "transcoding": {
            "ffmpeg_path": settings.FFMPEG_PATH,
            "max_concurrent": settings.MAX_CONCURRENT_TRANSCODES,
            "active": transcode_manager.active_count,
            "start_timeout": settings.TRANSCODE_START_TIMEOUT,
        },
        "configuration": {
            "default_user_agent": settings.DEFAULT_USER_AGENT,
            "connection_timeout": settings.DEFAULT_CONNECTION_TIMEOUT,
            "read_timeout": settings.DEFAULT_READ_TIMEOUT,
        },
    }


@app.post("/playback/resolve", response_model=ResolveResponse, dependencies=[Depends(verify_token)])
async def resolve_playback(request: ResolveRequest):
    """Resolve the delivery mode, escalation order and per-mode URLs for a stream"""
    resolver = get_resolver()
    resolution = resolver.resolve(request.descriptor.to_descriptor(), request.settings)
    capabilities = PlayerCapabilities(
        adaptive_supported=request.capabilities.adaptive_supported,
        native_hls=request.capabilities.native_hls,
    )
    initial_url = resolution.url_for(resolution.initial_mode)
    path = resolver.choose_playback_path(
        initial_url, resolution.initial_mode, resolution.container, capabilities)

    return ResolveResponse(
        initial_mode=resolution.initial_mode,
        order=list(resolution.order),
        urls={mode.value: url for mode, url in resolution.urls.items()},
        playback_path=path.value,
        container=resolution.container,
    )


@app.get("/stream/relay")
async def relay_stream(
    request: Request,
    url: Optional[str] = Query(None, description="Upstream URL to relay"),
):
    """Relay an upstream stream, manifest or segment through this server"""
    stream_url = require_stream_url(url)
    range_header = request.headers.get('range')
    if range_header:
        logger.debug(f"Range request for {stream_url}: {range_header}")

    try:
        return await relay_manager.relay(stream_url, range_header=range_header)
    except UpstreamUnavailable as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@app.get("/stream/transcode")
async def transcode_stream(
    url: Optional[str] = Query(None, description="Upstream URL to transcode"),
):
    """Stream the upstream with video copied and audio re-encoded to AAC (fragmented MP4)"""
    stream_url = require_stream_url(url)

    try:
        return await transcode_manager.open_transcode(stream_url)
    except TranscodeRejected as e:
        raise HTTPException(status_code=503, detail=str(e))
    except TranscodeStartError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
