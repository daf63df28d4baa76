"""
Model Catalog - Immutable per-model cost table.

NO DICTIONARIES - Entries are ModelCostEntry dataclasses.

The catalog is loaded once at startup from a ConfigSource and passed by
reference. A FallbackPolicy decides what happens when the primary source
cannot be loaded.
"""

from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from structlog import get_logger

from tokenguard.config import Settings
from tokenguard.exceptions import ModelCatalogError, UnknownModelError
from tokenguard.models.domain import ModelCostEntry

logger = get_logger(__name__)


BUILTIN_MODELS: tuple[ModelCostEntry, ...] = (
    ModelCostEntry(
        model_id="gpt-4.1",
        name="GPT-4.1",
        description="Smartest model for complex tasks",
        token_cost=200,
        ad_reward=500,
        api_model="Qwen/Qwen3-235B-A22B",
    ),
    ModelCostEntry(
        model_id="gpt-4.1-mini",
        name="GPT-4.1 Mini",
        description="Affordable model balancing speed and intelligence",
        token_cost=100,
        ad_reward=2000,
        api_model="gpt-4o-mini",
    ),
    ModelCostEntry(
        model_id="gpt-4.1-nano",
        name="GPT-4.1 Nano",
        description="Fastest for low-latency tasks",
        token_cost=20,
        ad_reward=10000,
        starting_grant=100,
        api_model="mistralai/Mixtral-8x7B-Instruct-v0.1",
    ),
)


class FallbackPolicy(str, Enum):
    """What to do when the primary catalog source fails."""

    FAIL = "fail"
    USE_FALLBACK = "use_fallback"


class ConfigSource(Protocol):
    """Anything that can produce cost table entries."""

    @property
    def name(self) -> str:
        """Human readable source name for logs."""
        ...

    def load(self) -> list[ModelCostEntry]:
        """
        Load entries.

        Raises:
            ModelCatalogError: Source unreadable or invalid
        """
        ...


class StaticConfigSource:
    """In-process table. Defaults to the built-in models."""

    def __init__(self, entries: tuple[ModelCostEntry, ...] = BUILTIN_MODELS) -> None:
        self._entries = entries

    @property
    def name(self) -> str:
        return "builtin"

    def load(self) -> list[ModelCostEntry]:
        return list(self._entries)


class _CatalogFileEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, max_length=100)
    name: str
    token_cost: int = Field(..., gt=0)
    ad_reward: int = Field(..., gt=0)
    starting_grant: int = Field(0, ge=0)
    description: str = ""
    api_model: str | None = None
    available: bool = True


class _CatalogFile(BaseModel):
    models: list[_CatalogFileEntry]


class JsonFileConfigSource:
    """
    Cost table read from a JSON file.

    Format:
        {"models": [{"id": "gpt-4.1-nano", "name": "GPT-4.1 Nano",
                     "token_cost": 20, "ad_reward": 10000, "starting_grant": 100}]}
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def name(self) -> str:
        return str(self.path)

    def load(self) -> list[ModelCostEntry]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ModelCatalogError(f"cannot read {self.path}: {e}") from e

        try:
            parsed = _CatalogFile.model_validate_json(raw)
        except ValidationError as e:
            raise ModelCatalogError(f"invalid catalog file {self.path}: {e}") from e

        return [
            ModelCostEntry(
                model_id=item.id,
                name=item.name,
                token_cost=item.token_cost,
                ad_reward=item.ad_reward,
                starting_grant=item.starting_grant,
                description=item.description,
                api_model=item.api_model,
                available=item.available,
            )
            for item in parsed.models
        ]


class ModelCatalog:
    """Read-only lookup over cost table entries, preserving declaration order."""

    def __init__(self, entries: list[ModelCostEntry]) -> None:
        if not entries:
            raise ModelCatalogError("catalog has no models")

        by_id: dict[str, ModelCostEntry] = {}
        for entry in entries:
            if entry.model_id in by_id:
                raise ModelCatalogError(f"duplicate model id: {entry.model_id}")
            by_id[entry.model_id] = entry

        self._entries = tuple(entries)
        self._by_id = MappingProxyType(by_id)

    def get(self, model_id: str) -> ModelCostEntry:
        """
        Look up a model.

        Raises:
            UnknownModelError: Model not in the cost table
        """
        entry = self._by_id.get(model_id)
        if entry is None:
            raise UnknownModelError(model_id)
        return entry

    @property
    def entries(self) -> tuple[ModelCostEntry, ...]:
        return self._entries

    @property
    def model_ids(self) -> list[str]:
        return [entry.model_id for entry in self._entries]

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._by_id

    def __iter__(self) -> Iterator[ModelCostEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def load_model_catalog(
    primary: ConfigSource,
    fallback: ConfigSource | None = None,
    policy: FallbackPolicy = FallbackPolicy.FAIL,
) -> ModelCatalog:
    """
    Load the catalog from `primary`, applying the fallback policy on failure.

    Raises:
        ModelCatalogError: Primary failed and policy is FAIL (or no fallback given)
    """
    try:
        catalog = ModelCatalog(primary.load())
    except (ModelCatalogError, ValueError) as e:
        if policy is FallbackPolicy.FAIL or fallback is None:
            logger.error("model_catalog_load_failed", source=primary.name, error=str(e))
            if isinstance(e, ModelCatalogError):
                raise
            raise ModelCatalogError(str(e)) from e

        logger.warning(
            "model_catalog_fallback_used",
            source=primary.name,
            fallback=fallback.name,
            error=str(e),
        )
        catalog = ModelCatalog(fallback.load())
        source_name = fallback.name
    else:
        source_name = primary.name

    logger.info("model_catalog_loaded", source=source_name, models=catalog.model_ids)
    return catalog


def build_model_catalog(settings: Settings) -> ModelCatalog:
    """
    Build the catalog from settings.

    MODEL_CATALOG_PATH selects a JSON file; otherwise the built-in table is
    used. The configured default model must exist in the result.
    """
    builtin = StaticConfigSource()
    if settings.model_catalog_path:
        policy = (
            FallbackPolicy.FAIL
            if settings.model_catalog_fallback == "fail"
            else FallbackPolicy.USE_FALLBACK
        )
        catalog = load_model_catalog(
            JsonFileConfigSource(settings.model_catalog_path), builtin, policy
        )
    else:
        catalog = load_model_catalog(builtin)

    if settings.default_model not in catalog:
        raise ModelCatalogError(f"default model {settings.default_model} is not in the catalog")
    return catalog
