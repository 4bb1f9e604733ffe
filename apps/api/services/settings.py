"""
Deployment settings read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    foodgraph_url: str = "https://api.foodgraph.com"
    foodgraph_email: Optional[str] = None
    foodgraph_password: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    classifier_model: str = "claude-sonnet-4-5"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    environment: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            foodgraph_url=os.environ.get("FOODGRAPH_URL", cls.foodgraph_url),
            foodgraph_email=os.environ.get("FOODGRAPH_EMAIL"),
            foodgraph_password=os.environ.get("FOODGRAPH_PASSWORD"),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
            classifier_model=os.environ.get("CLASSIFIER_MODEL", cls.classifier_model),
            supabase_url=os.environ.get("SUPABASE_URL"),
            supabase_key=os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_SERVICE_KEY"),
            environment=os.environ.get("PYTHON_ENV", "development")
        )

    @property
    def retriever_configured(self) -> bool:
        return bool(self.foodgraph_email and self.foodgraph_password)

    @property
    def classifier_configured(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def store_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")


# Global instance for dependency injection
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """Re-read the environment."""
    global _settings
    _settings = Settings.from_env()
    return _settings
