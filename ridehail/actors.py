"""Tagged actor variant resolved once at the auth boundary."""
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class RiderActor:
    id: str
    kind: str = "rider"


@dataclass(frozen=True)
class CaptainActor:
    id: str
    kind: str = "captain"


@dataclass(frozen=True)
class AdminActor:
    id: str
    kind: str = "admin"


Actor = Union[RiderActor, CaptainActor, AdminActor]


def room_for(actor: Actor) -> str:
    return f"{actor.kind}:{actor.id}"
