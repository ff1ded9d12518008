"""Boundary with the window host that owns the browser surfaces.

The host creates, positions, shows and hides surfaces; none of that lives
here. This module holds what the capture pipeline needs from the host:

- the Surface protocol (a label and a way to evaluate code against the page
  agent running inside the surface),
- the request/response types of the private URI scheme the host intercepts,
- a registry of live surfaces that tolerates surfaces being recreated at any
  time.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar
from urllib.parse import urlparse

T = TypeVar("T")


class Surface(Protocol):
    """One embedded browser view hosting one chat vendor's page."""

    label: str

    def evaluate(self, fn: Callable[[Any], T]) -> T:
        """Run fn against the surface's current page agent and return its result."""
        ...


@dataclass
class SchemeRequest:
    """A request issued against the host-registered URI scheme."""

    method: str
    url: str
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return urlparse(self.url).path or "/"


@dataclass
class SchemeResponse:
    status: int
    body: bytes = b""
    content_type: str = "application/json"

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


SchemeHandler = Callable[[SchemeRequest], SchemeResponse]


class SurfaceRegistry:
    """Thread-safe set of live surfaces keyed by label.

    Registering a label again replaces the previous surface, which is how a
    recreated surface (navigation, reload) shows up.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._surfaces: dict[str, Surface] = {}

    def register(self, surface: Surface) -> None:
        with self._lock:
            self._surfaces[surface.label] = surface

    def unregister(self, label: str) -> None:
        with self._lock:
            self._surfaces.pop(label, None)

    def get(self, label: str) -> Surface | None:
        with self._lock:
            return self._surfaces.get(label)

    def snapshot(self) -> list[Surface]:
        """Surfaces registered right now, safe to iterate while others change."""
        with self._lock:
            return list(self._surfaces.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._surfaces)
