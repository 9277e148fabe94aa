"""bountyops runtime settings (Pydantic v2 Settings).

Every tunable lives here so that:

* The CLI never hard-codes relative paths.
* Environment overrides work (``BOPS_DATA_DIR``, ``BOPS_MINIMUM_AMOUNT``, ...).
* Tests can inject a custom root via ``Settings(repo_root=tmp_path)``.

The Oracle API key is never a setting; only the *name* of the env var that
holds it is (``oracle_api_key_env``).
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bops.core.errors import RepoRootNotFound

_ROOT_MARKER = "pyproject.toml"


def find_repo_root(start: Path | None = None) -> Path:
    """Walk up from *start* (default: cwd) to the first directory holding ``pyproject.toml``.

    Raises
    ------
    RepoRootNotFound
        If no ancestor contains the marker.
    """
    origin = (start or Path.cwd()).resolve()
    for candidate in (origin, *origin.parents):
        if (candidate / _ROOT_MARKER).is_file():
            return candidate
    raise RepoRootNotFound(str(origin))


class Settings(BaseSettings):
    """All runtime configuration for bountyops."""

    model_config = SettingsConfigDict(
        env_prefix="BOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Root ────────────────────────────────────────────────
    repo_root: Path | None = None

    # ── Derived directory paths ─────────────────────────────
    data_dir: Path | None = None
    exports_dir: Path | None = None
    catalog_dir: Path | None = None
    db_filename: str = "bops.db"
    catalog_max_size_kb: int = 2048

    # ── Triage policy ───────────────────────────────────────
    minimum_amount: Decimal = Decimal("50.00")
    gate_min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    gate_max_minutes: int | None = None
    gate_max_amount: Decimal | None = None
    gate_max_complexity: str | None = None
    gate_supported_languages: list[str] | None = None

    # ── Verification gates ──────────────────────────────────
    root_cause_gate: float = Field(default=0.7, ge=0.0, le=1.0)
    fix_confirm_gate: float = Field(default=0.8, ge=0.0, le=1.0)
    fix_review_gate: float = Field(default=0.6, ge=0.0, le=1.0)

    # ── Oracle ──────────────────────────────────────────────
    oracle_base_url: str = "https://api.openai.com/v1"
    oracle_model: str = "gpt-4o-mini"
    oracle_api_key_env: str = "BOPS_ORACLE_API_KEY"
    oracle_timeout_s: float = 60.0
    oracle_min_interval_s: float = 0.0

    # ── Resilience ──────────────────────────────────────────
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_s: float = 0.5
    retry_max_delay_s: float = 5.0
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_cooldown_s: float = 60.0

    # ── Workers ─────────────────────────────────────────────
    worker_count: int = Field(default=2, ge=1)

    # ── Logging ─────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True

    # ── Audit ───────────────────────────────────────────────
    audit_key_env: str = "BOPS_AUDIT_KEY"

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Fill in any path that was not explicitly overridden."""
        if self.repo_root is None:
            self.repo_root = find_repo_root()

        root = self.repo_root
        defaults: dict[str, Path] = {
            "data_dir": root / "data",
            "exports_dir": root / "exports",
            "catalog_dir": root / "catalog",
        }
        for attr, default_val in defaults.items():
            if getattr(self, attr) is None:
                setattr(self, attr, default_val)

        if self.fix_review_gate > self.fix_confirm_gate:
            raise ValueError("fix_review_gate must not exceed fix_confirm_gate")
        return self

    @property
    def db_path(self) -> Path:
        assert self.data_dir is not None  # guaranteed after validation
        return self.data_dir / self.db_filename

    def ensure_dirs(self) -> None:
        """Create all local-state directories if they don't exist."""
        for d in (self.data_dir, self.exports_dir, self.catalog_dir):
            assert d is not None  # guaranteed after validation
            d.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings(**overrides: object) -> Settings:
    """Return a cached :class:`Settings` instance.

    In tests, call ``Settings(repo_root=tmp_path)`` directly.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
