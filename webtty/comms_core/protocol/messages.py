from typing import Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from webtty.comms_core.errors import ProtocolError

M = TypeVar("M", bound=BaseModel)


class WsWinsize(BaseModel):
    """ Real-time window size update. """
    columns: int = Field(ge=1)            # The number of columns in the terminal viewport
    rows: int = Field(ge=1)               # The number of rows in the terminal viewport
    width: int = Field(default=0, ge=0)   # Viewport width in pixels, 0 when unknown
    height: int = Field(default=0, ge=0)  # Viewport height in pixels, 0 when unknown


class WsHandshake(BaseModel):
    """First frame sent by the client, carrying the auth token and initial geometry."""
    model_config = ConfigDict(populate_by_name=True)

    auth_token: str = Field(default="", alias="AuthToken")
    columns: int = Field(default=0, ge=0)
    rows: int = Field(default=0, ge=0)


class TokenResponse(BaseModel):
    """Body returned by the token endpoint."""
    token: str


def parse_payload(raw: bytes | str, model: Type[M]) -> M:
    """
    Validates a JSON payload against the given model.

    Args:
        raw: The JSON document, as bytes or text.
        model: The pydantic model the payload must satisfy.

    Returns:
        The validated model instance.

    Raises:
        ProtocolError: If the payload is not valid JSON or does not match the model.
    """
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(f"invalid {model.__name__} payload: {e.errors(include_url=False)}") from e
