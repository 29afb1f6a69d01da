from typing import Annotated

from fastapi import Depends, Request

from livestate.domain.live.stream.runtime import StreamRuntime
from livestate.domain.live.stream.stream_domain import StreamService


def get_runtime(request: Request) -> StreamRuntime:
    return request.app.state.runtime


def get_stream_service(runtime: Annotated[StreamRuntime, Depends(get_runtime)]) -> StreamService:
    return runtime.streams


Runtime = Annotated[StreamRuntime, Depends(get_runtime)]
Streams = Annotated[StreamService, Depends(get_stream_service)]
