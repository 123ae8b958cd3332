"""
Relay Service

Fetches an upstream stream server-side and re-emits it to the browser, so
origins that block cross-origin or referrer-less requests can still be played.
Media bytes pass through untouched; HLS manifests get their child URIs pointed
back at the relay so every segment request takes the same path.
"""

import logging
from typing import Optional
from urllib.parse import quote, urlparse

import httpx
import m3u8
from fastapi.responses import Response

from config import settings
from responses import ClosingStreamingResponse

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
}

# Upstream headers worth passing on to the player
FORWARDED_HEADERS = ("content-length", "content-range", "accept-ranges", "last-modified")


class UpstreamUnavailable(Exception):
    """The upstream fetch failed, timed out, or answered with an error status"""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


def get_content_type(url: str) -> str:
    """Determine content type based on URL extension"""
    path = urlparse(url).path.lower()
    if path.endswith('.ts'):
        return 'video/mp2t'
    elif path.endswith(('.m3u8', '.m3u')):
        return HLS_CONTENT_TYPE
    elif path.endswith(('.mp4', '.m4s')):
        return 'video/mp4'
    elif path.endswith('.aac'):
        return 'audio/aac'
    elif path.endswith('.mkv'):
        return 'video/x-matroska'
    elif path.endswith('.webm'):
        return 'video/webm'
    elif path.endswith('.avi'):
        return 'video/x-msvideo'
    else:
        return 'application/octet-stream'


def normalize_content_type(upstream_type: Optional[str], url: str) -> str:
    """Keep the upstream content type unless it is missing or generic"""
    if upstream_type:
        base_type = upstream_type.split(";")[0].strip().lower()
        if base_type and base_type not in ("application/octet-stream", "binary/octet-stream", "text/plain"):
            return upstream_type
    return get_content_type(url)


def is_manifest(content_type: str, url: str) -> bool:
    if "mpegurl" in content_type.lower():
        return True
    return urlparse(url).path.lower().endswith(('.m3u8', '.m3u'))


class M3U8Processor:
    def __init__(self, relay_path: str):
        self.relay_path = relay_path

    def process_playlist(self, content: str, original_url: str) -> str:
        """Rewrite every URI in a playlist to go through the relay."""
        try:
            playlist = m3u8.loads(content, uri=original_url)

            # Handle both variant playlists (master) and media playlists
            if playlist.is_variant:
                for variant in playlist.playlists:
                    variant.uri = self._rewrite_url(variant.absolute_uri)
                for media in playlist.media:
                    if media.uri:
                        media.uri = self._rewrite_url(media.absolute_uri)
                for iframe in playlist.iframe_playlists:
                    iframe.uri = self._rewrite_url(iframe.absolute_uri)
            else:
                for segment in playlist.segments:
                    segment.uri = self._rewrite_url(segment.absolute_uri)
                # Initialization sections
                for seg_map in (playlist.segment_map if isinstance(playlist.segment_map, list) else []):
                    if seg_map and seg_map.uri:
                        seg_map.uri = self._rewrite_url(seg_map.absolute_uri)

            # Encryption keys are fetched by the browser too
            for key in playlist.keys:
                if key and key.uri and not key.uri.startswith(("data:", "skd:")):
                    key.uri = self._rewrite_url(key.absolute_uri)

            return playlist.dumps()
        except Exception as e:
            logger.error(f"Error processing M3U8 playlist from {original_url}: {e}")
            return content

    def _rewrite_url(self, original_url: str) -> str:
        """Rewrites a URL to point to the relay, encoding the original URL."""
        return f"{self.relay_path}?url={quote(original_url, safe='')}"


class RelayManager:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, relay_path: Optional[str] = None):
        # Relayed VOD can sit paused for a long time, so writes get a long timeout;
        # connects fail fast when the upstream is down.
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.DEFAULT_CONNECTION_TIMEOUT,
                read=settings.DEFAULT_READ_TIMEOUT,
                write=settings.RELAY_WRITE_TIMEOUT,
                pool=10.0
            ),
            follow_redirects=True,
            max_redirects=10,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0
            )
        )
        self.relay_path = relay_path if relay_path is not None else f"{settings.ROOT_PATH.rstrip('/')}/stream/relay"

    async def stop(self):
        await self.http_client.aclose()
        logger.info("Relay manager stopped")

    def _upstream_headers(self, url: str, range_header: Optional[str] = None) -> dict:
        parsed = urlparse(url)
        headers = {
            'User-Agent': settings.DEFAULT_USER_AGENT,
            'Referer': f"{parsed.scheme}://{parsed.netloc}/",
            'Origin': f"{parsed.scheme}://{parsed.netloc}",
            'Accept': '*/*',
        }
        if range_header:
            headers['Range'] = range_header
        return headers

    async def open_upstream(self, url: str, range_header: Optional[str] = None) -> httpx.Response:
        """Open a streaming upstream response, raising UpstreamUnavailable on failure"""
        request = self.http_client.build_request(
            'GET', url, headers=self._upstream_headers(url, range_header))
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream timed out for {url}: {e}")
            raise UpstreamUnavailable(f"Upstream timed out: {url}", status_code=504) from e
        except httpx.HTTPError as e:
            logger.warning(f"Upstream fetch failed for {url}: {e}")
            raise UpstreamUnavailable(f"Upstream fetch failed: {e}") from e

        if response.status_code >= 400:
            await response.aclose()
            logger.warning(f"Upstream returned {response.status_code} for {url}")
            raise UpstreamUnavailable(
                f"Upstream returned HTTP {response.status_code}")
        return response

    async def relay(self, url: str, range_header: Optional[str] = None) -> Response:
        """Relay one upstream resource. A single attempt, no retries."""
        response = await self.open_upstream(url, range_header)
        content_type = normalize_content_type(response.headers.get('content-type'), url)

        if is_manifest(content_type, url):
            try:
                await response.aread()
            except httpx.TimeoutException as e:
                logger.warning(f"Timed out reading manifest {url}: {e}")
                raise UpstreamUnavailable(f"Timed out reading manifest: {url}", status_code=504) from e
            except httpx.HTTPError as e:
                raise UpstreamUnavailable(f"Failed reading manifest: {e}") from e
            finally:
                await response.aclose()
            # Relative URIs resolve against the final URL after redirects
            rewritten = M3U8Processor(self.relay_path).process_playlist(
                response.text, str(response.url))
            logger.info(f"Relayed manifest {url}")
            return Response(content=rewritten, media_type=HLS_CONTENT_TYPE, headers=NO_CACHE_HEADERS)

        headers = dict(NO_CACHE_HEADERS)
        for name in FORWARDED_HEADERS:
            if name in response.headers:
                headers[name.title()] = response.headers[name]

        logger.info(
            f"Relaying {url}: {response.status_code}, Content-Type: {content_type}")
        return ClosingStreamingResponse(
            self._relay_body(response, url),
            status_code=response.status_code,
            media_type=content_type,
            headers=headers,
            on_close=response.aclose,
        )

    async def _relay_body(self, response: httpx.Response, url: str):
        bytes_relayed = 0
        try:
            async for chunk in response.aiter_bytes(chunk_size=settings.RELAY_CHUNK_SIZE):
                bytes_relayed += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already out; the only signal left is dropping the connection
            logger.error(
                f"Upstream failed mid-stream for {url} after {bytes_relayed} bytes: {e}")
            raise UpstreamUnavailable(f"Upstream failed mid-stream: {e}") from e
        finally:
            await response.aclose()
            logger.info(f"Relay closed for {url}, {bytes_relayed} bytes relayed")
