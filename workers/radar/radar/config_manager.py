"""
Worker Configuration Manager

Provides centralized configuration for the radar worker using the shared config system.
"""

import os
from typing import List, Optional

from radar_config import get_config


class WorkerConfig:
    """Worker-specific configuration wrapper with convenience methods."""

    def __init__(self):
        self.config = get_config()

        required_keys = [
            "internal.postgres_url",
            "internal.redis_url",
            "llm.provider",
            "llm.model",
        ]

        try:
            self.config.validate_required_keys(required_keys)
        except KeyError as e:
            raise RuntimeError(f"Missing required worker configuration: {e}")

    # Database and Redis
    @property
    def database_url(self) -> str:
        return self.config.get("internal.postgres_url")

    @property
    def database_echo(self) -> bool:
        return self.config.get("database.echo", False)

    @property
    def redis_url(self) -> str:
        return self.config.get("internal.redis_url")

    # LLM Configuration
    @property
    def llm_provider(self) -> str:
        return self.config.get("llm.provider", "ollama")

    @property
    def llm_model(self) -> str:
        return self.config.get("llm.model")

    @property
    def llm_fallback_model(self) -> Optional[str]:
        return self.config.get("llm.fallback_model", None)

    @property
    def ollama_url(self) -> str:
        return self.config.get("external_services.ollama.url", "http://localhost:11434")

    @property
    def gemini_model(self) -> str:
        return self.config.get("external_services.gemini.model", "gemini-2.0-flash-lite")

    @property
    def gemini_location(self) -> str:
        return os.getenv("GOOGLE_CLOUD_LOCATION") or self.config.get("external_services.gemini.location", "us-central1")

    @property
    def llm_similarity_timeout(self) -> int:
        return self.config.get("limits.llm.similarity_timeout", 60)

    @property
    def llm_difference_timeout(self) -> int:
        return self.config.get("limits.llm.difference_timeout", 120)

    @property
    def llm_generation_timeout(self) -> int:
        return self.config.get("limits.llm.generation_timeout", 180)

    @property
    def llm_classification_timeout(self) -> int:
        return self.config.get("limits.llm.classification_timeout", 60)

    @property
    def llm_malformed_retries(self) -> int:
        return self.config.get("limits.llm.malformed_retries", 1)

    # Story grouping
    @property
    def grouping_lookback_days(self) -> int:
        return self.config.get("algorithms.story_grouping.lookback_days", 7)

    @property
    def grouping_similarity_threshold(self) -> float:
        return self.config.get("algorithms.story_grouping.similarity_threshold", 0.65)

    @property
    def grouping_candidate_scan_limit(self) -> int:
        return self.config.get("algorithms.story_grouping.candidate_scan_limit", 200)

    @property
    def grouping_text_comparison_limit(self) -> int:
        return self.config.get("algorithms.story_grouping.text_comparison_limit", 1000)

    @property
    def grouping_prefilter_min_cosine(self) -> float:
        return self.config.get("algorithms.story_grouping.prefilter_min_cosine", 0.0)

    @property
    def grouping_prefilter_max_candidates(self) -> int:
        return self.config.get("algorithms.story_grouping.prefilter_max_candidates", 20)

    # Content fusion
    @property
    def fusion_similarity_threshold(self) -> int:
        return self.config.get("algorithms.fusion.similarity_threshold", 80)

    @property
    def fusion_update_threshold(self) -> int:
        return self.config.get("algorithms.fusion.update_threshold", 60)

    @property
    def fusion_truncate_text(self) -> int:
        return self.config.get("algorithms.fusion.truncate_text", 1500)

    @property
    def fusion_content_preview(self) -> int:
        return self.config.get("algorithms.fusion.content_preview", 1000)

    @property
    def fusion_generation_attempts(self) -> int:
        return self.config.get("algorithms.fusion.generation_attempts", 2)

    @property
    def fusion_update_attempts(self) -> int:
        return self.config.get("algorithms.fusion.update_attempts", 2)

    # Classification defaults
    @property
    def classification_defaults(self) -> dict:
        return self.config.get("algorithms.classification", {})

    # Media
    @property
    def media_accepted_format(self) -> str:
        return self.config.get("algorithms.media.accepted_format", "JPEG")

    @property
    def media_output_format(self) -> str:
        return self.config.get("algorithms.media.output_format", "WEBP")

    @property
    def media_output_quality(self) -> int:
        return self.config.get("algorithms.media.output_quality", 85)

    @property
    def media_download_timeout(self) -> int:
        return self.config.get("limits.media.download_timeout", 30)

    @property
    def media_max_bytes(self) -> int:
        return self.config.get("limits.media.max_bytes", 20 * 1024 * 1024)

    # Fetching
    @property
    def default_fetch_limit(self) -> int:
        return self.config.get("limits.fetch.default_fetch_limit", 10)

    @property
    def fetch_request_timeout(self) -> int:
        return self.config.get("limits.fetch.request_timeout", 30)

    @property
    def http_user_agent(self) -> str:
        return self.config.get("http.user_agent", "Mozilla/5.0")

    # Worker queue
    @property
    def redis_queue_name(self) -> str:
        return self.config.get("limits.redis.queue_name", "ingest_queue")

    @property
    def redis_queue_timeout(self) -> int:
        return self.config.get("limits.redis.queue_timeout", 5)

    @property
    def redis_sleep_interval(self) -> int:
        return self.config.get("limits.redis.sleep_interval", 5)

    @property
    def job_timeout(self) -> int:
        return self.config.get("limits.worker.job_timeout", 1800)

    def schedule_interval(self, source_type: str) -> int:
        return self.config.get(f"limits.schedule.{source_type}_interval", 0)

    # Storage settings
    @property
    def storage_provider(self) -> str:
        return os.getenv("STORAGE_PROVIDER", "local").lower()

    @property
    def storage_dir(self) -> str:
        return os.getenv("STORAGE_DIR", "/app/storage")

    @property
    def storage_base_url(self) -> str:
        return self.config.get("api.storage_base_url")

    @property
    def gcs_bucket_name(self) -> str:
        return os.getenv("GCS_BUCKET_NAME", "news-radar-media")

    # Secrets stay in the environment
    @property
    def google_cloud_project(self) -> str:
        return os.getenv("GOOGLE_CLOUD_PROJECT", "")

    @property
    def source_types(self) -> List[str]:
        return ["telegram", "website"]


# Global instance
_worker_config: Optional[WorkerConfig] = None


def get_worker_config() -> WorkerConfig:
    """Get the global worker configuration instance."""
    global _worker_config
    if _worker_config is None:
        _worker_config = WorkerConfig()
    return _worker_config
