import io
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

from fastapi import HTTPException, UploadFile
from fastapi.responses import Response
from PIL import Image, UnidentifiedImageError

from homebook.core.config import settings
from homebook.core.logging import get_logger

log = get_logger(__name__)

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_JPEG_SIGNATURE = b"\xff\xd8"
_GIF_SIGNATURES = (b"GIF87a", b"GIF89a")
_PDF_SIGNATURE = b"%PDF-"

PUBLIC_UPLOADS_PREFIX = "/uploads"


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def max_upload_bytes() -> int:
    return settings.upload_max_mb * 1024 * 1024


async def read_upload(file: UploadFile | None, required_message: str | None = None) -> UploadedFile | None:
    """Buffer a multipart file in memory, enforcing the configured size cap."""
    if file is None or not getattr(file, "filename", None):
        if required_message:
            raise HTTPException(status_code=400, detail=required_message)
        return None
    raw = await file.read(max_upload_bytes() + 1)
    if len(raw) > max_upload_bytes():
        raise HTTPException(status_code=413, detail=f"File too large (max {settings.upload_max_mb}MB)")
    if not raw:
        if required_message:
            raise HTTPException(status_code=400, detail=required_message)
        return None
    return UploadedFile(
        filename=(file.filename or "file").strip() or "file",
        content_type=(file.content_type or "application/octet-stream").lower(),
        content=raw,
    )


def detect_kind(raw: bytes) -> str | None:
    if raw.startswith(_PDF_SIGNATURE):
        return "pdf"
    if raw.startswith(_PNG_SIGNATURE):
        return "png"
    if raw.startswith(_JPEG_SIGNATURE):
        return "jpeg"
    if raw[:6] in _GIF_SIGNATURES:
        return "gif"
    if raw[:4] == b"RIFF" and raw[8:12] == b"WEBP":
        return "webp"
    return None


def is_image_or_pdf(upload: UploadedFile) -> bool:
    if upload.content_type.startswith("image/") or upload.content_type == "application/pdf":
        return True
    return detect_kind(upload.content) is not None


def compress_image_to_webp(raw: bytes, quality: int) -> bytes:
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError):
        raise HTTPException(status_code=400, detail="Invalid image file")

    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    output = io.BytesIO()
    image.save(output, format="WEBP", quality=max(1, min(quality, 100)), method=6)
    return output.getvalue()


def _storage_root() -> Path:
    return Path(settings.uploads_dir).expanduser().resolve()


def _resolve_inside_root(relative_path: str) -> Path | None:
    root = _storage_root()
    path = (root / relative_path).resolve()
    if root != path and root not in path.parents:
        return None
    return path


def encode_image(upload: UploadedFile) -> bytes:
    kind = detect_kind(upload.content)
    if kind not in ("png", "jpeg", "gif", "webp"):
        raise HTTPException(status_code=400, detail="Unsupported image type. Allowed: png, jpg, jpeg, gif, webp")
    return compress_image_to_webp(upload.content, settings.image_webp_quality)


def store_images(folder: str, uploads: list[UploadedFile]) -> list[str]:
    """Re-encode a batch of images as WEBP on disk and return their public URLs.

    The batch is stored whole or not at all. Every upload is decoded before
    anything touches the disk, and a failed write removes the files already
    written for this batch.
    """
    encoded = [(encode_image(upload), upload.size) for upload in uploads]
    stored: list[str] = []
    try:
        for content, original_size in encoded:
            stored.append(write_image(folder, content, original_size))
    except Exception:
        for url in stored:
            remove_stored_image(url)
        raise
    return stored


def write_image(folder: str, content: bytes, original_size: int) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    relative_path = f"{folder}/{timestamp}-{secrets.token_hex(4)}.webp"
    path = _resolve_inside_root(relative_path)
    if path is None:
        raise HTTPException(status_code=500, detail="Invalid upload storage path")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    log.info("image_stored", path=relative_path, original_size=original_size, stored_size=len(content))
    return f"{PUBLIC_UPLOADS_PREFIX}/{relative_path}"


def remove_stored_image(url: str | None) -> None:
    if not url or not url.startswith(PUBLIC_UPLOADS_PREFIX + "/"):
        return
    path = _resolve_inside_root(url[len(PUBLIC_UPLOADS_PREFIX) + 1:])
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        log.warning("image_remove_failed", url=url, error=str(exc))


def ensure_uploads_dir() -> Path:
    root = _storage_root()
    root.mkdir(parents=True, exist_ok=True)
    return root


def content_disposition(filename: str | None, inline: bool) -> str:
    """Header value with an ASCII fallback name plus the RFC 5987 UTF-8 form."""
    name = (filename or "file").replace('"', "").replace("\r", "").replace("\n", "")
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii").strip()
    if not ascii_name or ascii_name.startswith("."):
        ascii_name = f"file{ascii_name}" if ascii_name.startswith(".") else "file"
    value = f'{"inline" if inline else "attachment"}; filename="{ascii_name}"'
    if ascii_name != name:
        value += f"; filename*=UTF-8''{quote(name, safe='')}"
    return value


def binary_response(content: bytes, media_type: str | None, filename: str | None, inline: bool) -> Response:
    return Response(
        content=bytes(content),
        media_type=media_type or "application/octet-stream",
        headers={
            "Content-Disposition": content_disposition(filename, inline),
            "Content-Length": str(len(content)),
            "Cache-Control": "private, max-age=60",
        },
    )
