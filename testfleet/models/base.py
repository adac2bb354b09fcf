"""Base model configuration for wire and report data structures."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model that rejects unknown fields.

    Requests and responses cross a process boundary, so a field the other
    side does not know about is an error rather than something to drop.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")
