from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    """Inbound body: camelCase on the wire, unknown keys rejected."""
    model_config = ConfigDict(extra='forbid', alias_generator=to_camel, populate_by_name=True)


class ResponseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SuccessResponse(ResponseModel):
    success: bool = True
    message: str | None = None
