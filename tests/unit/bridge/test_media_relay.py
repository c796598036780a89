"""
Unit tests for the cross-network media relay.
"""
import io

import pytest
from PIL import Image

from src.models.message import MediaContent, MediaKind
from src.services.bridge import formatter
from src.services.bridge.media_relay import (
    STICKER_SIZE, VOICE_MIME_TYPE, MediaRelay, convert_to_png, normalize_sticker
)
from src.services.bridge.models import (
    MediaDownloadError, MediaTimeoutError, MediaTooLargeError, MediaTranscodeError
)
from tests.mocks.network_mocks import CONTAINER_ID


def image_bytes(fmt: str, size=(64, 32), color=(255, 0, 0, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def staged_files(temp_dir):
    staging = temp_dir / "staging"
    return list(staging.iterdir()) if staging.exists() else []


def serve(chunks_by_url):
    """Replacement for MediaRelay._iter_url_chunks backed by a dict"""
    async def iter_url_chunks(url):
        if url not in chunks_by_url:
            raise MediaDownloadError("HTTP 404 while downloading media")
        yield chunks_by_url[url]
    return iter_url_chunks


class TestImageConversion:
    """Pillow helpers"""

    def test_convert_to_png(self, temp_dir):
        source = temp_dir / "sticker.webp"
        source.write_bytes(image_bytes("WEBP"))

        convert_to_png(str(source), str(temp_dir / "out.png"))

        with Image.open(temp_dir / "out.png") as image:
            assert image.format == "PNG"
            assert image.size == (64, 32)

    def test_normalize_sticker_fits_canvas(self, temp_dir):
        source = temp_dir / "photo.png"
        source.write_bytes(image_bytes("PNG", size=(1024, 256)))

        normalize_sticker(str(source), str(temp_dir / "out.webp"))

        with Image.open(temp_dir / "out.webp") as image:
            assert image.format == "WEBP"
            assert image.size == STICKER_SIZE
            assert image.mode == "RGBA"
            # letterboxed area stays transparent
            assert image.getpixel((0, 0))[3] == 0


class TestInbound:
    """Source attachment -> forum thread"""

    @pytest.mark.asyncio
    async def test_image_is_relayed_as_photo(self, media_relay, source_client, forum_client, temp_dir):
        data = image_bytes("PNG")
        source_client.attachments["img1"] = data

        message_id = await media_relay.relay_inbound(
            MediaContent(kind=MediaKind.IMAGE, ref="img1", mime_type="image/png"), 7, "caption"
        )

        sent = forum_client.messages[-1]
        assert sent['message_id'] == message_id
        assert sent['type'] == 'photo'
        assert sent['thread_id'] == 7
        assert sent['caption'] == "caption"
        assert sent['data'] == data
        assert staged_files(temp_dir) == []

    @pytest.mark.asyncio
    async def test_document_keeps_file_name(self, media_relay, source_client, forum_client):
        source_client.attachments["doc"] = b"%PDF-1.4 test"

        await media_relay.relay_inbound(
            MediaContent(kind=MediaKind.DOCUMENT, ref="doc", file_name="report.pdf"), 7
        )

        sent = forum_client.messages[-1]
        assert sent['type'] == 'document'
        assert sent['file_name'] == "report.pdf"
        assert sent['path'].endswith(".pdf")

    @pytest.mark.asyncio
    async def test_push_to_talk_is_sent_as_voice(self, media_relay, source_client, forum_client):
        source_client.attachments["ptt"] = b"OggS voice"

        await media_relay.relay_inbound(
            MediaContent(kind=MediaKind.AUDIO, ref="ptt", push_to_talk=True), 7
        )

        assert forum_client.messages[-1]['voice'] is True

    @pytest.mark.asyncio
    async def test_video_note_is_sent_as_video(self, media_relay, source_client, forum_client):
        source_client.attachments["vn"] = b"\x00\x00\x00\x18ftypmp42"

        await media_relay.relay_inbound(MediaContent(kind=MediaKind.VIDEO_NOTE, ref="vn"), 7)

        assert forum_client.messages[-1]['type'] == 'video'

    @pytest.mark.asyncio
    async def test_sticker_sent_natively(self, media_relay, source_client, forum_client):
        source_client.attachments["stk"] = image_bytes("WEBP")

        await media_relay.relay_inbound(MediaContent(kind=MediaKind.STICKER, ref="stk"), 7)

        assert forum_client.messages[-1]['type'] == 'sticker'
        assert media_relay.get_statistics()['sticker_fallbacks'] == 0

    @pytest.mark.asyncio
    async def test_rejected_sticker_falls_back_to_png_photo(self, media_relay, source_client,
                                                          forum_client, temp_dir):
        forum_client.reject_stickers = True
        source_client.attachments["stk"] = image_bytes("WEBP")

        await media_relay.relay_inbound(MediaContent(kind=MediaKind.STICKER, ref="stk"), 7)

        sent = forum_client.messages[-1]
        assert sent['type'] == 'photo'
        assert sent['caption'] == formatter.STICKER_FALLBACK_CAPTION
        assert sent['data'].startswith(b"\x89PNG")
        assert media_relay.get_statistics()['sticker_fallbacks'] == 1
        assert staged_files(temp_dir) == []

    @pytest.mark.asyncio
    async def test_rejected_sticker_keeps_attribution_caption(self, media_relay, source_client,
                                                             forum_client):
        forum_client.reject_stickers = True
        source_client.attachments["stk"] = image_bytes("WEBP")

        await media_relay.relay_inbound(MediaContent(kind=MediaKind.STICKER, ref="stk"), 7,
                                        "👤 Alice")

        assert forum_client.messages[-1]['caption'] == "👤 Alice"

    @pytest.mark.asyncio
    async def test_undecodable_rejected_sticker_raises(self, media_relay, source_client, forum_client,
                                                      temp_dir):
        forum_client.reject_stickers = True
        source_client.attachments["stk"] = b"not an image"

        with pytest.raises(MediaTranscodeError):
            await media_relay.relay_inbound(MediaContent(kind=MediaKind.STICKER, ref="stk"), 7)

        assert staged_files(temp_dir) == []


class TestFailures:
    """Size caps, timeouts and download errors"""

    @pytest.mark.asyncio
    async def test_declared_size_over_cap_rejected_before_download(self, media_relay, source_client):
        media = MediaContent(kind=MediaKind.VIDEO, ref="missing", file_size=media_relay.max_file_size + 1)

        with pytest.raises(MediaTooLargeError):
            await media_relay.relay_inbound(media, 7)

    @pytest.mark.asyncio
    async def test_streamed_size_over_cap(self, source_client, forum_client, temp_dir):
        relay = MediaRelay(source_client, forum_client, CONTAINER_ID,
                           staging_dir=str(temp_dir / "staging"), max_file_size=2048)
        source_client.attachments["big"] = b"x" * 4096

        with pytest.raises(MediaTooLargeError):
            await relay.relay_inbound(MediaContent(kind=MediaKind.DOCUMENT, ref="big"), 7)

        assert forum_client.messages == []
        assert staged_files(temp_dir) == []
        assert relay.get_statistics()['failures'] == 1

    @pytest.mark.asyncio
    async def test_missing_attachment_is_download_error(self, media_relay, temp_dir):
        with pytest.raises(MediaDownloadError):
            await media_relay.relay_inbound(MediaContent(kind=MediaKind.IMAGE, ref="nope"), 7)

        assert staged_files(temp_dir) == []

    @pytest.mark.asyncio
    async def test_empty_attachment_is_download_error(self, media_relay, source_client):
        source_client.attachments["empty"] = b""

        with pytest.raises(MediaDownloadError):
            await media_relay.relay_inbound(MediaContent(kind=MediaKind.IMAGE, ref="empty"), 7)

    @pytest.mark.asyncio
    async def test_slow_download_times_out(self, source_client, forum_client, temp_dir):
        relay = MediaRelay(source_client, forum_client, CONTAINER_ID,
                           staging_dir=str(temp_dir / "staging"), timeout=0.05)
        source_client.attachments["slow"] = b"x" * 10
        source_client.download_delay = 0.5

        with pytest.raises(MediaTimeoutError):
            await relay.relay_inbound(MediaContent(kind=MediaKind.IMAGE, ref="slow"), 7)

        assert staged_files(temp_dir) == []


class TestOutbound:
    """Forum attachment -> source conversation"""

    @pytest.mark.asyncio
    async def test_photo_is_sent_with_caption(self, media_relay, source_client, forum_client,
                                             monkeypatch, temp_dir):
        data = image_bytes("PNG")
        forum_client.download_links["file1"] = "https://files.example/file1"
        monkeypatch.setattr(media_relay, "_iter_url_chunks", serve({"https://files.example/file1": data}))

        receipt = await media_relay.relay_outbound(
            MediaContent(kind=MediaKind.IMAGE, ref="file1"), "15551230001@s.whatsapp.net", "hello"
        )

        conversation_id, payload = source_client.sent[-1]
        assert receipt is not None
        assert conversation_id == "15551230001@s.whatsapp.net"
        assert payload.kind is MediaKind.IMAGE
        assert payload.caption == "hello"
        assert payload.mime_type == "image/jpeg"
        assert payload.view_once is False
        assert source_client.sent_files[-1] == data
        assert staged_files(temp_dir) == []

    @pytest.mark.asyncio
    async def test_sticker_is_normalized(self, media_relay, source_client, forum_client, monkeypatch):
        forum_client.download_links["stk"] = "https://files.example/stk"
        monkeypatch.setattr(media_relay, "_iter_url_chunks",
                            serve({"https://files.example/stk": image_bytes("PNG", size=(300, 100))}))

        await media_relay.relay_outbound(MediaContent(kind=MediaKind.STICKER, ref="stk"), "conv")

        payload = source_client.sent[-1][1]
        assert payload.kind is MediaKind.STICKER
        assert payload.mime_type == "image/webp"
        with Image.open(io.BytesIO(source_client.sent_files[-1])) as image:
            assert image.size == STICKER_SIZE

    @pytest.mark.asyncio
    async def test_unconvertible_sticker_falls_back_to_image(self, media_relay, source_client,
                                                             forum_client, monkeypatch):
        forum_client.download_links["stk"] = "https://files.example/stk"
        monkeypatch.setattr(media_relay, "_iter_url_chunks",
                            serve({"https://files.example/stk": b"\x1a\x45\xdf\xa3 webm"}))

        await media_relay.relay_outbound(
            MediaContent(kind=MediaKind.STICKER, ref="stk", is_animated=True), "conv"
        )

        payload = source_client.sent[-1][1]
        assert payload.kind is MediaKind.IMAGE
        assert payload.caption == formatter.OUTBOUND_STICKER_FALLBACK_CAPTION
        assert media_relay.get_statistics()['sticker_fallbacks'] == 1

    @pytest.mark.asyncio
    async def test_voice_note_uses_voice_mime(self, media_relay, source_client, forum_client, monkeypatch):
        forum_client.download_links["voice"] = "https://files.example/voice"
        monkeypatch.setattr(media_relay, "_iter_url_chunks",
                            serve({"https://files.example/voice": b"OggS data"}))

        await media_relay.relay_outbound(
            MediaContent(kind=MediaKind.AUDIO, ref="voice", push_to_talk=True), "conv", "ignored"
        )

        payload = source_client.sent[-1][1]
        assert payload.push_to_talk is True
        assert payload.mime_type == VOICE_MIME_TYPE
        assert payload.caption == ""

    @pytest.mark.asyncio
    async def test_unresolvable_file_is_download_error(self, media_relay):
        with pytest.raises(MediaDownloadError):
            await media_relay.relay_outbound(MediaContent(kind=MediaKind.IMAGE, ref="gone"), "conv")

    @pytest.mark.asyncio
    async def test_unacknowledged_send_returns_none(self, media_relay, source_client, forum_client,
                                                    monkeypatch):
        source_client.acknowledge = False
        forum_client.download_links["f"] = "https://files.example/f"
        monkeypatch.setattr(media_relay, "_iter_url_chunks", serve({"https://files.example/f": b"data"}))

        assert await media_relay.relay_outbound(
            MediaContent(kind=MediaKind.DOCUMENT, ref="f"), "conv"
        ) is None


class TestPhotoFromUrl:
    """Profile photo delivery"""

    @pytest.mark.asyncio
    async def test_photo_posted_into_thread(self, media_relay, forum_client, monkeypatch, temp_dir):
        data = image_bytes("PNG")
        monkeypatch.setattr(media_relay, "_iter_url_chunks", serve({"https://pps.example/a": data}))

        await media_relay.send_photo_from_url("https://pps.example/a", 9, formatter.PROFILE_PHOTO_CAPTION)

        sent = forum_client.messages[-1]
        assert sent['thread_id'] == 9
        assert sent['caption'] == formatter.PROFILE_PHOTO_CAPTION
        assert sent['data'] == data
        assert staged_files(temp_dir) == []
