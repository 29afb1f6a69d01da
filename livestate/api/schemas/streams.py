from pydantic import BaseModel, ConfigDict, Field


class CreateStreamIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=128, description="Room name, used as the stream id")


class CreateStreamOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(alias="streamId")


class JoinStreamIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(alias="userId", min_length=1, max_length=128)


class JoinStreamOut(BaseModel):
    token: str
