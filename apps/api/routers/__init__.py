"""Routers package."""

from . import (
    health,
    accounts,
    conversions,
    admin,
)
