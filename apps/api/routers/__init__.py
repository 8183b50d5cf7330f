"""Routers package."""

from . import (
    health,
    billing,
    usage,
    referrals,
    webhooks,
)
