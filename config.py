"""
Configuration module for the agent core.
Handles environment variables, permission and routing settings, and the
model tier table.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_set(name: str) -> Set[str]:
    """Comma-separated env var -> set of non-empty names."""
    return {p.strip() for p in os.getenv(name, "").split(",") if p.strip()}


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class PermissionsConfig:
    """Permission policy input. Read-only to the engine."""
    default_mode: str = os.getenv("PERMISSION_MODE", "interactive")  # interactive | trust | readonly
    always_allow: Set[str] = field(default_factory=lambda: _env_set("PERMISSION_ALWAYS_ALLOW"))
    always_deny: Set[str] = field(default_factory=lambda: _env_set("PERMISSION_ALWAYS_DENY"))
    # YOLO mode: allow every tool without asking
    trusted_mode: bool = os.getenv("TRUSTED_MODE", "false").lower() == "true"


@dataclass
class RoutingConfig:
    """Model routing settings"""
    model_selection: str = os.getenv("MODEL_SELECTION", "auto")  # auto | manual | cost-optimized | speed-optimized
    manual_model: Optional[str] = os.getenv("MANUAL_MODEL") or None
    preferred_tier: Optional[str] = os.getenv("PREFERRED_TIER") or None


@dataclass
class AppConfig:
    """Application-specific configuration"""
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    max_tool_iterations: int = int(os.getenv("MAX_TOOL_ITERATIONS", "200"))
    # Bounded parallelism for read-only tool batches
    max_tool_concurrency: int = int(os.getenv("MAX_TOOL_CONCURRENCY", "5"))
    # Per-call tool timeout in seconds (0 disables)
    tool_timeout: float = float(os.getenv("TOOL_TIMEOUT", "120"))
    hook_timeout: float = float(os.getenv("HOOK_TIMEOUT", "30"))
    # Web results go stale quickly; everything else has no TTL
    web_cache_ttl: float = float(os.getenv("WEB_CACHE_TTL", "60"))
    # Warm the tool cache with likely follow-up reads
    prefetch_enabled: bool = os.getenv("PREFETCH_ENABLED", "true").lower() == "true"
    # Context compression
    context_target_tokens: int = int(os.getenv("CONTEXT_TARGET_TOKENS", "80000"))
    context_keep_first: int = int(os.getenv("CONTEXT_KEEP_FIRST", "2"))
    context_keep_last: int = int(os.getenv("CONTEXT_KEEP_LAST", "10"))
    context_chunk_size: int = int(os.getenv("CONTEXT_CHUNK_SIZE", "5"))
    permission_rules_path: str = os.getenv("PERMISSION_RULES_PATH", "")


# ============================================================
# Model tiers -- Anthropic Claude on Bedrock
# Costs are USD per 1K tokens. Model IDs can be overridden per tier.
# ============================================================

TIERS: List[str] = ["fast", "balanced", "deep"]


@dataclass(frozen=True)
class ModelConfig:
    """One row of the tier table"""
    tier: str
    model_id: str
    description: str
    max_tokens: int
    supports_tools: bool
    supports_vision: bool
    cost_per_1k_prompt: float
    cost_per_1k_completion: float


MODEL_TIERS: Dict[str, ModelConfig] = {
    "fast": ModelConfig(
        tier="fast",
        model_id=os.getenv("FAST_MODEL", "us.anthropic.claude-haiku-4-5-20251001-v1:0"),
        description="Fastest with near-frontier intelligence - best for simple reads and listings",
        max_tokens=64000,
        supports_tools=True,
        supports_vision=True,
        cost_per_1k_prompt=0.001,
        cost_per_1k_completion=0.005,
    ),
    "balanced": ModelConfig(
        tier="balanced",
        model_id=os.getenv("BALANCED_MODEL", "us.anthropic.claude-sonnet-4-5-20250929-v1:0"),
        description="Best for coding and most agent tasks",
        max_tokens=64000,
        supports_tools=True,
        supports_vision=True,
        cost_per_1k_prompt=0.003,
        cost_per_1k_completion=0.015,
    ),
    "deep": ModelConfig(
        tier="deep",
        model_id=os.getenv("DEEP_MODEL", "us.anthropic.claude-opus-4-6-v1"),
        description="Deep reasoning - best for planning, refactors and debugging",
        max_tokens=128000,
        supports_tools=True,
        supports_vision=True,
        cost_per_1k_prompt=0.005,
        cost_per_1k_completion=0.025,
    ),
}


# Create global config instances
aws_config = AWSConfig()
app_config = AppConfig()
permissions_config = PermissionsConfig()
routing_config = RoutingConfig()


def configure_logging(level: Optional[str] = None, filename: Optional[str] = None) -> None:
    """Configure root logging (to a file when LOG_FILE is set so it doesn't interfere with a TUI)."""
    kwargs = {}
    if filename or app_config.log_file:
        kwargs["filename"] = filename or app_config.log_file
    logging.basicConfig(
        level=getattr(logging, (level or app_config.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        **kwargs,
    )


def get_model_config(model_id: str) -> Optional[ModelConfig]:
    """Get the tier table row for a model ID, or None for unknown models"""
    for model in MODEL_TIERS.values():
        if model.model_id == model_id:
            return model
    return None


def get_tier_for_model(model_id: str) -> Optional[str]:
    model = get_model_config(model_id)
    return model.tier if model else None


def get_max_output_tokens(model_id: str) -> int:
    model = get_model_config(model_id)
    return model.max_tokens if model else 4096


def estimate_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
    """USD cost of a call; 0.0 for models outside the tier table"""
    model = get_model_config(model_id)
    if not model:
        return 0.0
    return (prompt_tokens / 1000) * model.cost_per_1k_prompt + (completion_tokens / 1000) * model.cost_per_1k_completion


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
