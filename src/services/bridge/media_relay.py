"""
Media Relay for TopicGate

Moves attachments between the two networks. Bytes are streamed into a staged
file under the staging directory, handed to the destination send primitive
chosen by media kind, and the staged file is always removed afterwards.

Raster work (sticker conversion) runs in a worker thread via Pillow so the
event loop is never blocked by image processing.
"""

import asyncio
import logging
import mimetypes
import os
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
from PIL import Image, ImageOps

from src.models.message import MediaContent, MediaKind, MediaPayload, SendReceipt
from . import formatter
from .interfaces import ForumClient, SourceClient
from .models import (
    MediaDownloadError, MediaRelayError, MediaTimeoutError, MediaTooLargeError, MediaTranscodeError
)


STICKER_SIZE = (512, 512)
VOICE_MIME_TYPE = "audio/ogg; codecs=opus"
CHUNK_SIZE = 64 * 1024

_DEFAULT_SUFFIXES = {
    MediaKind.IMAGE: ".jpg",
    MediaKind.VIDEO: ".mp4",
    MediaKind.VIDEO_NOTE: ".mp4",
    MediaKind.AUDIO: ".mp3",
    MediaKind.DOCUMENT: ".bin",
    MediaKind.STICKER: ".webp",
}

_DEFAULT_MIME_TYPES = {
    MediaKind.IMAGE: "image/jpeg",
    MediaKind.VIDEO: "video/mp4",
    MediaKind.VIDEO_NOTE: "video/mp4",
    MediaKind.AUDIO: "audio/mpeg",
    MediaKind.DOCUMENT: "application/octet-stream",
    MediaKind.STICKER: "image/webp",
}


def convert_to_png(source_path: str, target_path: str) -> None:
    """Rasterize an image (typically a WebP sticker) to PNG"""
    with Image.open(source_path) as image:
        image.convert("RGBA").save(target_path, format="PNG")


def normalize_sticker(source_path: str, target_path: str) -> None:
    """Fit an image into a transparent 512x512 canvas and save it as lossless WebP"""
    with Image.open(source_path) as image:
        fitted = ImageOps.contain(image.convert("RGBA"), STICKER_SIZE, method=Image.Resampling.LANCZOS)
        canvas = Image.new("RGBA", STICKER_SIZE, (0, 0, 0, 0))
        offset = ((STICKER_SIZE[0] - fitted.width) // 2, (STICKER_SIZE[1] - fitted.height) // 2)
        canvas.paste(fitted, offset, fitted)
        canvas.save(target_path, format="WEBP", lossless=True)


class MediaRelay:
    """
    Cross-network attachment relay.

    Features:
    - Streaming downloads with a hard size cap
    - Download and upload bounded by a timeout
    - Sticker fallbacks in both directions
    - Collision-free staging files that never outlive a relay
    """

    def __init__(
        self,
        source_client: SourceClient,
        forum_client: ForumClient,
        container_id: int,
        staging_dir: str = "data/staging",
        max_file_size: int = 50 * 1024 * 1024,
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the relay.

        Args:
            source_client: Source network client
            forum_client: Forum network client
            container_id: Forum container holding the bridged threads
            staging_dir: Directory for staged attachment files
            max_file_size: Largest attachment accepted, in bytes
            timeout: Seconds allowed for each download and each upload
            logger: Logger instance for relay operations
        """
        self.source_client = source_client
        self.forum_client = forum_client
        self.container_id = container_id
        self.staging_dir = Path(staging_dir)
        self.max_file_size = max_file_size
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

        self.session: Optional[aiohttp.ClientSession] = None

        self._stats = {
            'inbound_relayed': 0,
            'outbound_relayed': 0,
            'sticker_fallbacks': 0,
            'failures': 0,
            'bytes_relayed': 0,
        }

    # Source -> forum

    async def relay_inbound(self, media: MediaContent, thread_id: int, caption: str = "") -> int:
        """
        Relay a source attachment into a forum thread.

        Args:
            media: Decoded attachment from the source network
            thread_id: Destination thread
            caption: Caption to attach (already attributed for groups)

        Returns:
            Forum message id

        Raises:
            MediaRelayError: If the attachment could not be relayed
        """
        self._check_declared_size(media)
        staged: List[str] = []
        try:
            path = self._stage_file(self._suffix_for(media))
            staged.append(path)
            await self._download(self.source_client.download_attachment(media.ref), path)

            message_id = await self._bounded(
                self._send_to_forum(media, path, thread_id, caption, staged),
                "upload to forum"
            )
            self._stats['inbound_relayed'] += 1
            self.logger.debug(f"Relayed {media.kind.value} into thread {thread_id}")
            return message_id
        except MediaRelayError:
            self._stats['failures'] += 1
            raise
        finally:
            self._cleanup(staged)

    async def _send_to_forum(self, media: MediaContent, path: str, thread_id: int,
                             caption: str, staged: List[str]) -> int:
        forum = self.forum_client
        container = self.container_id

        if media.kind is MediaKind.IMAGE:
            return await forum.send_photo(container, thread_id, path, caption)
        if media.kind in (MediaKind.VIDEO, MediaKind.VIDEO_NOTE):
            return await forum.send_video(container, thread_id, path, caption)
        if media.kind is MediaKind.AUDIO:
            return await forum.send_audio(container, thread_id, path, caption, voice=media.push_to_talk)
        if media.kind is MediaKind.DOCUMENT:
            return await forum.send_document(container, thread_id, path, caption,
                                             file_name=media.file_name)

        # Stickers: native first, then a PNG rendition as a photo
        try:
            return await forum.send_sticker(container, thread_id, path)
        except Exception as e:
            self.logger.warning(f"Forum rejected sticker, sending as photo: {e}")

        png_path = self._stage_file(".png")
        staged.append(png_path)
        await self._transcode(convert_to_png, path, png_path)
        self._stats['sticker_fallbacks'] += 1
        return await forum.send_photo(container, thread_id, png_path,
                                      caption or formatter.STICKER_FALLBACK_CAPTION)

    async def send_photo_from_url(self, url: str, thread_id: int, caption: str = "") -> int:
        """Download an image over HTTP and post it into a thread"""
        staged: List[str] = []
        try:
            path = self._stage_file(".jpg")
            staged.append(path)
            await self._download(self._iter_url_chunks(url), path)
            return await self._bounded(
                self.forum_client.send_photo(self.container_id, thread_id, path, caption),
                "upload to forum"
            )
        finally:
            self._cleanup(staged)

    # Forum -> source

    async def relay_outbound(self, media: MediaContent, conversation_id: str,
                             caption: str = "") -> Optional[SendReceipt]:
        """
        Relay a forum attachment to a source conversation.

        Args:
            media: Decoded attachment; ref is the forum file id
            conversation_id: Destination conversation
            caption: Caption to send along

        Returns:
            Send receipt from the source client, or None if unacknowledged

        Raises:
            MediaRelayError: If the attachment could not be relayed
        """
        self._check_declared_size(media)
        staged: List[str] = []
        try:
            try:
                url = await self._bounded(self.forum_client.get_download_link(media.ref),
                                          "resolve download link")
            except MediaRelayError:
                raise
            except Exception as e:
                raise MediaDownloadError(f"Could not resolve forum file {media.ref}: {e}") from e

            path = self._stage_file(self._suffix_for(media))
            staged.append(path)
            await self._download(self._iter_url_chunks(url), path)

            payload = await self._build_payload(media, path, caption, staged)
            receipt = await self._bounded(self.source_client.send(conversation_id, payload),
                                          "upload to source")
            self._stats['outbound_relayed'] += 1
            return receipt
        except MediaRelayError:
            self._stats['failures'] += 1
            raise
        finally:
            self._cleanup(staged)

    async def _build_payload(self, media: MediaContent, path: str, caption: str,
                             staged: List[str]) -> MediaPayload:
        if media.kind is MediaKind.STICKER:
            sticker_path = self._stage_file(".webp")
            staged.append(sticker_path)
            try:
                await self._transcode(normalize_sticker, path, sticker_path)
                return MediaPayload(kind=MediaKind.STICKER, path=sticker_path,
                                    mime_type="image/webp", is_animated=media.is_animated)
            except MediaTranscodeError as e:
                self.logger.warning(f"Sticker normalization failed, sending as image: {e}")
                self._stats['sticker_fallbacks'] += 1
                return MediaPayload(kind=MediaKind.IMAGE, path=path,
                                    caption=formatter.OUTBOUND_STICKER_FALLBACK_CAPTION,
                                    mime_type=self._mime_for(media))

        if media.kind is MediaKind.AUDIO and media.push_to_talk:
            return MediaPayload(kind=MediaKind.AUDIO, path=path, push_to_talk=True,
                                mime_type=VOICE_MIME_TYPE)

        return MediaPayload(
            kind=media.kind,
            path=path,
            caption=caption if media.kind is not MediaKind.AUDIO else "",
            mime_type=self._mime_for(media),
            file_name=media.file_name,
            gif_playback=media.gif_playback,
            view_once=False
        )

    # Streaming and staging

    async def _iter_url_chunks(self, url: str) -> AsyncIterator[bytes]:
        """Stream an HTTP download"""
        await self._ensure_session()
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    raise MediaDownloadError(f"HTTP {response.status} while downloading media")
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    yield chunk
        except aiohttp.ClientError as e:
            raise MediaDownloadError(f"Media download failed: {e}") from e

    async def _ensure_session(self):
        """Ensure HTTP session is available"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def _download(self, chunks: AsyncIterator[bytes], path: str) -> int:
        return await self._bounded(self._write_stream(chunks, path), "download")

    async def _write_stream(self, chunks: AsyncIterator[bytes], path: str) -> int:
        written = 0
        try:
            with open(path, "wb") as handle:
                async for chunk in chunks:
                    written += len(chunk)
                    if written > self.max_file_size:
                        raise MediaTooLargeError(
                            f"Attachment exceeds {self.max_file_size} bytes"
                        )
                    handle.write(chunk)
        except (MediaRelayError, asyncio.TimeoutError):
            raise
        except Exception as e:
            raise MediaDownloadError(f"Attachment download failed: {e}") from e
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        if written == 0:
            raise MediaDownloadError("Attachment download returned no data")

        self._stats['bytes_relayed'] += written
        return written

    async def _bounded(self, awaitable, what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise MediaTimeoutError(f"Timed out after {self.timeout}s during {what}") from e

    async def _transcode(self, converter, source_path: str, target_path: str) -> None:
        try:
            await asyncio.to_thread(converter, source_path, target_path)
        except Exception as e:
            raise MediaTranscodeError(f"Could not convert {Path(source_path).name}: {e}") from e

    def _stage_file(self, suffix: str) -> str:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="relay_", suffix=suffix, dir=str(self.staging_dir))
        os.close(fd)
        return path

    def _cleanup(self, paths: List[str]) -> None:
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.warning(f"Could not remove staged file {path}: {e}")

    def _check_declared_size(self, media: MediaContent) -> None:
        if media.file_size is not None and media.file_size > self.max_file_size:
            self._stats['failures'] += 1
            raise MediaTooLargeError(
                f"{media.kind.value} of {media.file_size} bytes exceeds {self.max_file_size} bytes"
            )

    def _suffix_for(self, media: MediaContent) -> str:
        if media.file_name and Path(media.file_name).suffix:
            return Path(media.file_name).suffix
        if media.kind is MediaKind.AUDIO and media.push_to_talk:
            return ".ogg"
        if media.mime_type:
            guessed = mimetypes.guess_extension(media.mime_type.split(";")[0].strip())
            if guessed:
                return guessed
        return _DEFAULT_SUFFIXES[media.kind]

    def _mime_for(self, media: MediaContent) -> str:
        if media.mime_type:
            return media.mime_type
        if media.file_name:
            guessed, _ = mimetypes.guess_type(media.file_name)
            if guessed:
                return guessed
        return _DEFAULT_MIME_TYPES[media.kind]

    async def close(self) -> None:
        """Close the HTTP session"""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'staging_dir': str(self.staging_dir),
            'max_file_size': self.max_file_size,
            'timeout': self.timeout,
            **self._stats,
        }
