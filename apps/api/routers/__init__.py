"""Routers package."""

from . import (
    health,
    auth,
    billing,
    generate,
    generations,
    payments,
    proxy,
)
