"""Routers package."""

from . import (
    health,
    user,
    credits,
    billing,
    webhooks,
    referral,
    admin,
)
