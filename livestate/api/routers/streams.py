from fastapi import APIRouter, Response
from fastapi.responses import ORJSONResponse, StreamingResponse

from livestate.api.dependency import Runtime, Streams
from livestate.api.schemas.streams import CreateStreamIn, CreateStreamOut, JoinStreamIn, JoinStreamOut
from livestate.domain.live.stream.broadcaster import observe_stream
from livestate.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

router = APIRouter(prefix="/streams", tags=["Streams"])


@router.post("", response_model=CreateStreamOut, status_code=201)
async def create_stream(body: CreateStreamIn, streams: Streams):
    """Create a stream. An already existing room answers 200 instead of 201."""
    stream_id, created = await streams.create_stream(body.name)
    return ORJSONResponse(
        status_code=HttpStatusCode.CREATED if created else HttpStatusCode.OK,
        content=CreateStreamOut(stream_id=stream_id).model_dump(by_alias=True),
    )


@router.get("")
async def list_streams(streams: Streams):
    summaries = await streams.list_active()
    return [x.model_dump(mode="json", by_alias=True) for x in summaries]


@router.delete("/{stream_id}", status_code=204)
async def delete_stream(stream_id: str, streams: Streams):
    await streams.delete_stream(stream_id)
    return Response(status_code=HttpStatusCode.NO_CONTENT)


@router.post("/{stream_id}/join", response_model=JoinStreamOut)
async def join_stream(stream_id: str, body: JoinStreamIn, streams: Streams):
    return JoinStreamOut(token=streams.issue_join_token(stream_id, body.user_id))


@router.get("/{stream_id}/state")
async def get_stream_state(stream_id: str, streams: Streams):
    state = await streams.get_state(stream_id)
    return state.to_public()


@router.get("/{stream_id}/updates")
async def stream_updates(stream_id: str, runtime: Runtime):
    """Server-sent events: the current snapshot, then one event per change."""
    events = await observe_stream(
        runtime.store,
        runtime.registry,
        stream_id,
        queue_size=runtime.settings.OBSERVER_QUEUE_SIZE,
        keepalive_seconds=runtime.settings.SSE_KEEPALIVE_SECONDS,
    )
    if events is None:
        raise AppError(
            errcode=AppErrorCode.E_STREAM_NOT_FOUND,
            errmesg=f"Stream '{stream_id}' not found",
            status_code=HttpStatusCode.NOT_FOUND,
        )

    async def event_source():
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
