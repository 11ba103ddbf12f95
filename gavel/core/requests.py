"""
Request shapes for session actions.

Arguments arriving from the outer API layer are checked here before any
session is touched. Failures surface as gavel ValidationError.
"""

from typing import Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from gavel.core.errors import ValidationError

MAX_NAME_LENGTH = 100
MAX_ID_LENGTH = 128

Identifier = pydantic.constr(strip_whitespace=True, min_length=1, max_length=MAX_ID_LENGTH)


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ActorRequest(_Request):
    """Any action performed by a user on a session."""
    session_id: Identifier
    user_id: Identifier


class CreateSessionRequest(_Request):
    name: pydantic.constr(strip_whitespace=True, min_length=1, max_length=MAX_NAME_LENGTH)
    budget: StrictInt = Field(gt=0)
    host_id: Identifier


class BidRequest(ActorRequest):
    amount: StrictInt = Field(gt=0)


R = TypeVar("R", bound=_Request)


def parse_request(model: Type[R], **fields) -> R:
    """
    Build a request model, converting pydantic errors.

    Raises:
        ValidationError: listing every offending field
    """
    try:
        return model(**fields)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from None
