"""
Catalog of model identifiers the pool knows how to call.

Models outside the catalog are never selected. Verified entries are
trusted without a live probe; the remaining entries are only handed out
after a bounded health probe succeeds.
"""

from dataclasses import dataclass
from datetime import timedelta

CATALOG_VERSION = "2025.11"

DEFAULT_LIMIT = 250000

# Rolling provider rate windows; tpm counts tokens, the others count requests
RATE_WINDOW_LENGTHS: dict[str, timedelta] = {
    "rpm": timedelta(minutes=1),
    "rph": timedelta(hours=1),
    "rpd": timedelta(days=1),
    "tpm": timedelta(minutes=1),
}
TOKEN_WINDOWS = frozenset({"tpm"})


@dataclass(frozen=True)
class ModelSpec:
    """Static description of a provider model."""

    name: str
    verified: bool
    """Known to work; selection skips the live health probe."""

    default_limit: int = DEFAULT_LIMIT
    rpm: int | None = None
    rph: int | None = None
    rpd: int | None = None
    tpm: int | None = None

    def rate_limits(self) -> dict[str, int]:
        """Rate window limits this model declares, keyed by window kind."""
        limits = {}
        for kind in RATE_WINDOW_LENGTHS:
            value = getattr(self, kind)
            if value:
                limits[kind] = value
        return limits


_SPECS: tuple[ModelSpec, ...] = (
    ModelSpec("gemini-2.5-pro", True, 125000, rpm=2, rph=120, rpd=50, tpm=125000),
    ModelSpec("gemini-robotics-er-1.5-preview", True, 250000, rpm=10, rph=600, rpd=250, tpm=250000),
    ModelSpec("learnlm-2.0-flash-experimental", True, 1500000, rpm=15, rph=900, rpd=1500),
    ModelSpec("gemini-2.5-flash", True, 250000, rpm=10, rph=600, rpd=250, tpm=250000),
    ModelSpec("gemini-2.0-flash-lite", True, 1000000, rpm=30, rph=1800, rpd=200, tpm=1000000),
    ModelSpec("gemini-2.0-flash", True, 1000000, rpm=15, rph=900, rpd=200, tpm=1000000),
    ModelSpec("gemini-2.5-flash-lite", True, 250000, rpm=15, rph=900, rpd=1000, tpm=250000),
    # Callable, but availability varies by account
    ModelSpec("gemini-3-pro", False, 125000, rpm=2, rph=120, rpd=50, tpm=125000),
    ModelSpec("gemini-2.5-flash-live", False, 1000000, rpm=15, rph=900, rpd=1000),
    ModelSpec("gemini-2.0-flash-live", False, 1000000, rpm=15, rph=900, rpd=200),
    ModelSpec("gemma-3-27b", False, 15000, rpm=30, rph=1800, rpd=14400),
    ModelSpec("gemma-3-12b", False, 15000, rpm=30, rph=1800, rpd=14400),
)


class ModelCatalog:
    """Side-effect-free membership tests against the model allow-list."""

    def __init__(self, specs: tuple[ModelSpec, ...] = _SPECS) -> None:
        self._specs = {spec.name: spec for spec in specs}
        self._order = [spec.name for spec in specs]

    @property
    def version(self) -> str:
        return CATALOG_VERSION

    def get(self, name: str) -> ModelSpec | None:
        return self._specs.get(name)

    def is_supported(self, name: str) -> bool:
        """Whether the pool may ever hand out this model name."""
        return name in self._specs

    def is_verified(self, name: str) -> bool:
        """Whether catalog membership alone is enough evidence of availability."""
        spec = self._specs.get(name)
        return spec is not None and spec.verified

    def default_limit(self, name: str) -> int:
        spec = self._specs.get(name)
        return spec.default_limit if spec else DEFAULT_LIMIT

    def rate_limits(self, name: str) -> dict[str, int]:
        """Rate windows seeded for a newly provisioned model (none for unknown names)."""
        spec = self._specs.get(name)
        return spec.rate_limits() if spec else {}

    def supported_names(self) -> list[str]:
        return list(self._order)


default_catalog = ModelCatalog()
