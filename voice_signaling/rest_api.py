"""
HTTP REST API handlers for the voice signaling server.

Channel catalog endpoints under the /api/ prefix:
- GET   /api/channels              list channels with live occupancy
- GET   /api/channels/{channel_id} one channel
- POST  /api/channels              create a channel
- PATCH /api/channels/{channel_id} update name, capacity or passphrase

Order of checks for bodies: Content-Type (415) → body decoding and JSON
parsing (400) → validation (422) → channel errors (400/404) → storage
errors (500).
"""

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

import anyio.to_thread
from charset_normalizer import from_bytes
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from .channel_store import ChannelStore, ChannelStoreWriteError, NameRequiredError
from .schemas import CreateChannelParams, UpdateChannelParams

logger = logging.getLogger(__name__)

CHARSET_PATTERN = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.IGNORECASE)

# Code pages Windows clients use for Cyrillic channel names
CYRILLIC_ENCODINGS = ["cp1251", "cp866"]

ParsedBody = Tuple[Optional[Dict[str, Any]], Optional[JSONResponse]]


def _error_response(status_code: int, code: str, message_ru: str, message_en: str) -> JSONResponse:
    """Bilingual error body shared by all /api handlers."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "code": code,
            "error": f"{message_ru} / {message_en}",
        },
    )


def _invalid_json_response(message_ru: str, message_en: str) -> JSONResponse:
    return _error_response(400, "INVALID_JSON", message_ru, message_en)


def _invalid_encoding_response() -> JSONResponse:
    return _error_response(
        400,
        "INVALID_ENCODING",
        "Не удалось прочитать тело запроса. Используйте UTF-8 или укажите charset",
        "Could not decode request body. Use UTF-8 or set charset in Content-Type",
    )


def _channel_not_found_response(channel_id: str) -> JSONResponse:
    return _error_response(
        404,
        "CHANNEL_NOT_FOUND",
        f"Канал '{channel_id}' не найден",
        f"Channel '{channel_id}' not found",
    )


def _decode_body(raw_body: bytes, content_type: str, detect: bool) -> Optional[str]:
    """
    Decode a request body to text.

    An explicit charset wins. Otherwise UTF-8 is tried, then (when detect is
    set) the Cyrillic Windows/DOS code pages.

    Returns:
        The decoded text, or None if no encoding fits.
    """
    match = CHARSET_PATTERN.search(content_type)
    if match:
        charset = match.group(1)
        try:
            return raw_body.decode(charset)
        except (UnicodeDecodeError, LookupError):
            logger.warning(f"Body does not decode as declared charset {charset}")
            return None

    try:
        return raw_body.decode("utf-8")
    except UnicodeDecodeError:
        if not detect:
            return None

    guess = from_bytes(raw_body, cp_isolation=CYRILLIC_ENCODINGS).best()
    if guess is None:
        return None
    logger.info(f"Decoded request body as {guess.encoding}")
    return str(guess)


async def _read_json_object(request: Request) -> ParsedBody:
    """Check Content-Type, then decode and parse a JSON object body."""
    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("application/json"):
        return None, _error_response(
            415,
            "UNSUPPORTED_MEDIA_TYPE",
            "Content-Type должен быть application/json",
            "Content-Type must be application/json",
        )

    raw_body = await request.body()
    if not raw_body.strip():
        return None, _invalid_json_response("Пустое тело запроса", "Request body is empty")

    detect = request.app.state.settings.enable_encoding_auto_detection
    text = _decode_body(raw_body, content_type, detect)
    if text is None:
        return None, _invalid_encoding_response()

    try:
        body = json.loads(text)
    except json.JSONDecodeError as e:
        return None, _invalid_json_response(
            f"Ошибка разбора JSON: {e.msg} в позиции {e.pos}",
            f"JSON parse error: {e.msg} at position {e.pos}",
        )
    if not isinstance(body, dict):
        return None, _invalid_json_response(
            "Тело запроса должно быть JSON объектом", "Request body must be a JSON object"
        )
    return body, None


def _validation_error_response(e: ValidationError) -> JSONResponse:
    """422 naming the first invalid field."""
    errors = e.errors()
    if errors:
        loc = errors[0].get("loc") or ("unknown",)
        detail = f"Field '{loc[0]}': {errors[0].get('msg', str(e))}"
    else:
        detail = str(e)

    return _error_response(
        422,
        "VALIDATION_ERROR",
        f"Ошибка валидации параметров: {detail}",
        f"Parameter validation failed: {detail}",
    )


def _storage_error_response(e: ChannelStoreWriteError) -> JSONResponse:
    logger.error(f"Channel store write failed: {e}")
    return _error_response(
        500,
        "INTERNAL_ERROR",
        "Не удалось сохранить каналы",
        "Failed to save channels",
    )


async def _hash_password(store: ChannelStore, password: Optional[str]) -> Optional[str]:
    """Hash a passphrase in a worker thread; bcrypt would stall the event loop."""
    if not password:
        return None
    return await anyio.to_thread.run_sync(store.hasher.hash, password)


async def list_channels_handler(request: Request) -> JSONResponse:
    """GET /api/channels - public view of every channel, in creation order."""
    broadcaster = request.app.state.broadcaster
    return JSONResponse(content=broadcaster.snapshot())


async def get_channel_handler(request: Request) -> JSONResponse:
    """GET /api/channels/{channel_id} - public view of one channel."""
    channel_id = request.path_params["channel_id"]
    channel = request.app.state.store.get(channel_id)
    if channel is None:
        return _channel_not_found_response(channel_id)
    return JSONResponse(content=request.app.state.broadcaster.channel_view(channel))


async def create_channel_handler(request: Request) -> JSONResponse:
    """
    POST /api/channels - create a channel.

    Request format:
    {
        "name": "Общий",
        "maxUsers": 5,       // optional, server default when missing or non-positive
        "password": "secret" // optional
    }

    Responds 201 with the channel view, or 400 NAME_REQUIRED for an empty name.
    """
    body, error = await _read_json_object(request)
    if error:
        return error

    try:
        params = CreateChannelParams.model_validate(body)
    except ValidationError as e:
        return _validation_error_response(e)

    store = request.app.state.store
    try:
        password_hash = await _hash_password(store, params.password)
        channel = store.create(params.name, capacity=params.max_users, password_hash=password_hash)
    except NameRequiredError:
        return _error_response(
            400,
            NameRequiredError.code,
            "Название канала обязательно",
            "Channel name is required",
        )
    except ChannelStoreWriteError as e:
        return _storage_error_response(e)

    request.app.state.service.channels_changed()
    return JSONResponse(status_code=201, content=request.app.state.broadcaster.channel_view(channel))


async def update_channel_handler(request: Request) -> JSONResponse:
    """
    PATCH /api/channels/{channel_id} - update a channel.

    Only fields present in the body are changed; "password": null removes
    the passphrase.
    """
    channel_id = request.path_params["channel_id"]
    body, error = await _read_json_object(request)
    if error:
        return error

    try:
        params = UpdateChannelParams.model_validate(body)
    except ValidationError as e:
        return _validation_error_response(e)

    store = request.app.state.store
    patch = params.to_patch()
    if "password" in patch:
        patch["password_hash"] = await _hash_password(store, patch.pop("password"))

    try:
        channel = store.update(channel_id, patch)
    except ChannelStoreWriteError as e:
        return _storage_error_response(e)

    if channel is None:
        return _channel_not_found_response(channel_id)

    request.app.state.service.channels_changed()
    return JSONResponse(content=request.app.state.broadcaster.channel_view(channel))
