"""datagraph configuration via environment / .env file."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DATAGRAPH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Graph construction ---
    MAX_NODES: int = 50_000
    ENTITY_MAX_CARDINALITY_RATIO: float = 0.5
    ENTITY_MAX_VALUES_PER_COLUMN: int = 100

    # --- Embeddings ---
    EMBEDDING_LABEL_BUCKETS: int = 16

    # --- Centrality ---
    PAGERANK_DAMPING: float = 0.85
    PAGERANK_MAX_ITER: int = 100
    PAGERANK_TOL: float = 1e-6
    EXACT_CENTRALITY_MAX_NODES: int = 1_000

    # --- Communities ---
    COMMUNITY_RESOLUTION: float = 1.0
    RANDOM_SEED: int = 42

    # --- Anomalies ---
    ANOMALY_Z_THRESHOLD: float = 2.5

    # --- Similarity / link prediction ---
    SIMILARITY_THRESHOLD: float = 0.8
    LINK_PROBABILITY_THRESHOLD: float = 0.5
    MAX_LINK_PREDICTIONS: int = 20
    PAIRWISE_BLOCK_SIZE: int = 512

    @field_validator("PAGERANK_DAMPING")
    @classmethod
    def _check_damping(cls, v: float) -> float:
        if not 0.0 < v < 1.0:
            raise ValueError("PAGERANK_DAMPING must be in (0, 1)")
        return v

    @field_validator("PAIRWISE_BLOCK_SIZE", "EMBEDDING_LABEL_BUCKETS", "MAX_NODES")
    @classmethod
    def _check_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


settings = Settings()
