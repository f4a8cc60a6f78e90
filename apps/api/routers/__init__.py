"""Routers package."""

from . import (
    health,
    generation,
    payments,
    admin,
)
