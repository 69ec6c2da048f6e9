"""casegraph configuration via environment / .env file."""

from __future__ import annotations

from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CASEGRAPH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Change journal ---
    JOURNAL_MAX_ENTRIES: int = 10_000
    JOURNAL_RETENTION_DAYS: int = 90

    # --- Centralities ---
    PAGERANK_DAMPING: float = 0.85
    PAGERANK_ITERATIONS: int = 100
    EIGENVECTOR_ITERATIONS: int = 100

    # --- Community detection ---
    COMMUNITY_ALGORITHM: Literal["greedy_modularity", "edge_betweenness"] = "greedy_modularity"
    COMMUNITY_MAX_ITERATIONS: int = 10

    # --- Pattern detection ---
    HUB_ALPHA: float = 0.6
    HUB_MIN_DEGREE: int = 3
    CYCLE_MIN_LENGTH: int = 3
    CYCLE_MAX_LENGTH: int = 6

    # --- Queries / reports ---
    ALL_PATHS_MAX_HOPS: int = 3
    TOP_K: int = 10

    # --- Text extraction ---
    NER_MIN_CONFIDENCE: float = 0.3
    RELATIONSHIP_MIN_CONFIDENCE: float = 0.4
    CONTEXT_WINDOW: int = 50

    # --- Ingestion ---
    VALIDATION_STRICT: bool = False
    DEFAULT_ENTITY_TYPE: str = "default"

    @field_validator("PAGERANK_DAMPING")
    @classmethod
    def _check_damping(cls, v: float) -> float:
        if not 0.0 < v < 1.0:
            raise ValueError("PAGERANK_DAMPING must be in (0, 1)")
        return v

    @field_validator("HUB_ALPHA")
    @classmethod
    def _check_alpha(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("HUB_ALPHA must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def _check_cycle_bounds(self) -> "Settings":
        if self.CYCLE_MIN_LENGTH > self.CYCLE_MAX_LENGTH:
            raise ValueError("CYCLE_MIN_LENGTH must not exceed CYCLE_MAX_LENGTH")
        return self


settings = Settings()
