from fastapi import Request
from fastapi.responses import JSONResponse
from livekit.api.twirp_client import TwirpError, TwirpErrorCode
from loguru import logger
from redis.exceptions import RedisError

from livestate.shared.api.utils import ApiFailure, make_response
from livestate.utils.app_errors import AppError, AppErrorCode, HttpStatusCode


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    Custom exception handler for AppError.
    Converts AppError to ApiFailure and returns via make_response.
    """
    # Log with the caller info captured when AppError was raised
    log_msg = f"{exc.errcode} {exc.erresid} msg={exc.errmesg} caller={exc.caller_info}"
    if exc.status_code >= 500:
        logger.error(log_msg)
    else:
        logger.warning(log_msg)

    failure = ApiFailure(errcode=exc.errcode, errmesg=exc.errmesg, erresid=exc.erresid)
    return make_response(failure, status_code=exc.status_code)


# Mapping from Twirp error codes to AppErrorCode
_TWIRP_TO_APP_ERROR_MAP = {
    TwirpErrorCode.UNKNOWN: AppErrorCode.E_LIVEKIT_UNKNOWN,
    TwirpErrorCode.INVALID_ARGUMENT: AppErrorCode.E_LIVEKIT_INVALID_ARGUMENT,
    TwirpErrorCode.DEADLINE_EXCEEDED: AppErrorCode.E_LIVEKIT_DEADLINE_EXCEEDED,
    TwirpErrorCode.NOT_FOUND: AppErrorCode.E_LIVEKIT_NOT_FOUND,
    TwirpErrorCode.ALREADY_EXISTS: AppErrorCode.E_LIVEKIT_ALREADY_EXISTS,
    TwirpErrorCode.PERMISSION_DENIED: AppErrorCode.E_LIVEKIT_PERMISSION_DENIED,
    TwirpErrorCode.UNAUTHENTICATED: AppErrorCode.E_LIVEKIT_UNAUTHENTICATED,
    TwirpErrorCode.RESOURCE_EXHAUSTED: AppErrorCode.E_LIVEKIT_RESOURCE_EXHAUSTED,
    TwirpErrorCode.INTERNAL: AppErrorCode.E_LIVEKIT_INTERNAL,
    TwirpErrorCode.UNAVAILABLE: AppErrorCode.E_LIVEKIT_UNAVAILABLE,
}


async def twirp_error_handler(request: Request, exc: TwirpError) -> JSONResponse:
    """
    Custom exception handler for TwirpError (LiveKit API errors).
    Server-side room service failures surface as 502.
    """
    errcode = _TWIRP_TO_APP_ERROR_MAP.get(exc.code, AppErrorCode.E_ROOM_SERVICE_ERROR)

    log_msg = f"TwirpError: code={exc.code} status={exc.status} msg={exc.message}"
    if exc.metadata:
        log_msg += f" metadata={exc.metadata}"

    if exc.status >= 500:
        logger.error(log_msg)
        status_code = HttpStatusCode.BAD_GATEWAY
    else:
        logger.warning(log_msg)
        status_code = exc.status

    failure = ApiFailure(errcode=errcode.value, errmesg=exc.message)
    return make_response(failure, status_code=status_code)


async def redis_error_handler(request: Request, exc: RedisError) -> JSONResponse:
    logger.error(
        "Store unavailable: path={} method={} error={!r}", request.url.path, request.method, exc
    )
    failure = ApiFailure(
        errcode=AppErrorCode.E_STORE_UNAVAILABLE.value, errmesg="State store unavailable"
    )
    return make_response(failure, status_code=HttpStatusCode.SERVICE_UNAVAILABLE)
