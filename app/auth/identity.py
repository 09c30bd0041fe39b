"""
Caller identity as seen by the metering layer.

Optional authentication never raises: a request either carries a valid
session (Authenticated) or it does not (Anonymous). Metering decides what
an Anonymous caller may do; it never has to guess from a missing user id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from app.models import User


@dataclass(frozen=True)
class Anonymous:
    reason: str = "no_credential"


@dataclass(frozen=True)
class Authenticated:
    user: User

    @property
    def user_id(self) -> str:
        return self.user.id


Identity = Union[Anonymous, Authenticated]
