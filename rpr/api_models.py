from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Target(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: str = Field(..., description="Repository the image was pushed to, e.g. api")
    tag: str = Field(..., description="Image tag, e.g. v2")


class _EventBase(BaseModel):
    # Registries send many more keys (request, actor, source, ...); they are ignored.
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: str = Field(..., description="ISO-8601 time the registry emitted the event")
    target: Target


class PushEvent(_EventBase):
    action: Literal["push"]


class PullEvent(_EventBase):
    action: Literal["pull"]


RegistryEvent = Annotated[Union[PushEvent, PullEvent], Field(discriminator="action")]


class Notification(BaseModel):
    """Body of a registry notification delivery.

    Parsing fails on any unknown action or missing field, which rejects the whole batch.
    """

    events: list[RegistryEvent]
