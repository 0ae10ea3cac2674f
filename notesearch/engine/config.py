"""Configuration management for notesearch."""

from pathlib import Path
from typing import Optional, List

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


class SearchConfig(BaseModel):
    enable_semantic: bool = True
    max_candidates: int = 20
    chunk_size: int = 3000
    min_relevance_score: float = 0.5
    enable_fuzzy_match: bool = False
    fuzzy_threshold: float = 0.4
    hybrid_candidates: int = 20
    max_results: int = 20
    scan_concurrency: int = 8
    include_context: bool = True
    search_strategy: str = "fast"

    @field_validator('min_relevance_score', 'fuzzy_threshold')
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("value must be between 0 and 1")
        return v

    @field_validator('search_strategy')
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        if v not in ("fast", "thorough"):
            raise ValueError("search_strategy must be 'fast' or 'thorough'")
        return v

    @field_validator('max_candidates', 'chunk_size', 'hybrid_candidates', 'max_results', 'scan_concurrency')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be a positive integer")
        return v


class LLMConfig(BaseModel):
    provider: str = "ollama"
    family: str = "qwen2.5"
    base_url: str = "http://localhost:11434"
    timeout_s: float = 30.0
    temperature: float = 0.0


class Config(BaseModel):
    """Main configuration for notesearch."""

    notes_path: Path
    templates_folder: str = ".templates"
    extensions: List[str] = Field(default_factory=lambda: [".txt", ".md"])
    search: SearchConfig = Field(default_factory=SearchConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    @field_validator('notes_path')
    @classmethod
    def validate_notes_path(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.is_dir():
            raise ValueError(f"Notes path is not a directory: {v}")
        return v

    @field_validator('extensions')
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [ext if ext.startswith('.') else f".{ext}" for ext in (e.lower() for e in v)]

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            candidates = [
                Path("notesearch.yaml"),
                Path.home() / ".config" / "notesearch" / "config.yaml",
                Path("/etc/notesearch/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode='json'), f, default_flow_style=False)
