"""Configuration loader for the ScentWise gateway.

Reads a JSON config file containing the text-generation provider, payment
provider identifiers, quotas and rate-limit parameters. Secrets are never
stored in the file: the file names the environment variables that hold them
and they are resolved on access.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


@dataclass
class ProviderConfig:
    """Configuration for the text-generation provider."""

    name: str = "gemini"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key_env: str = "GEMINI_API_KEY"
    default_model: str = "gemini-2.0-flash"
    max_output_tokens: int = 1500
    temperature: float = 0.8
    timeout: float = 60.0
    stub: bool = False

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass
class PaymentsConfig:
    """Payment/subscription provider settings."""

    base_url: str = "https://api.lemonsqueezy.com/v1"
    api_key_env: str = "LEMONSQUEEZY_API_KEY"
    store_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    timeout: float = 15.0
    max_customer_pages: int = 10

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env)


@dataclass
class SecretsConfig:
    """Names of the environment variables holding signing secrets."""

    owner_key_env: str = "OWNER_KEY"
    subscription_secret_env: str = "SUBSCRIPTION_SECRET"
    trial_secret_env: str = "TRIAL_SECRET"
    webhook_secret_env: str = "LEMONSQUEEZY_WEBHOOK_SECRET"

    @property
    def owner_key(self) -> Optional[str]:
        return os.getenv(self.owner_key_env) or None

    @property
    def subscription_secret(self) -> Optional[str]:
        return os.getenv(self.subscription_secret_env) or None

    @property
    def trial_secret(self) -> Optional[str]:
        return os.getenv(self.trial_secret_env) or None

    @property
    def webhook_secret(self) -> Optional[str]:
        return os.getenv(self.webhook_secret_env) or None


@dataclass
class StoreConfig:
    """Durable counter store (Redis) connection settings."""

    url_env: str = "REDIS_URL"
    timeout: float = 2.0

    @property
    def url(self) -> Optional[str]:
        return os.getenv(self.url_env) or None


@dataclass
class RateLimitRule:
    """Request budget for one endpoint label."""

    max_requests: int
    window_seconds: float = 60.0


def default_rate_limit_rules() -> Dict[str, RateLimitRule]:
    return {
        "login": RateLimitRule(5),
        "owner": RateLimitRule(5),
        "checkout": RateLimitRule(5),
        "verify": RateLimitRule(10),
        "check-tier": RateLimitRule(30),
        "recommend": RateLimitRule(20),
        "debug": RateLimitRule(5),
    }


@dataclass
class RateLimitConfig:
    """Per-endpoint rate-limit rules (per client IP)."""

    rules: Dict[str, RateLimitRule] = field(default_factory=default_rate_limit_rules)
    rules_file: Optional[str] = None

    def rule_for(self, label: str) -> RateLimitRule:
        rule = self.rules.get(label)
        if rule is None:
            raise KeyError("No rate-limit rule for endpoint label '{}'".format(label))
        return rule


@dataclass
class QuotaConfig:
    """Monthly query quotas."""

    premium_monthly: int = 500
    free_trial: int = 3


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    environment_env: str = "SCENTWISE_ENV"
    log_file: str = "logs/gateway.log"
    log_level: str = "INFO"

    @property
    def production(self) -> bool:
        """True when the deployment environment variable says "production"."""
        return os.getenv(self.environment_env, "").strip().lower() == "production"


def _rule_from_dict(label: str, data: Any) -> RateLimitRule:
    if not isinstance(data, dict) or "max_requests" not in data:
        raise ValueError("Rate-limit rule '{}' must define max_requests".format(label))
    try:
        rule = RateLimitRule(
            max_requests=int(data["max_requests"]),
            window_seconds=float(data.get("window_seconds", 60.0)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError("Rate-limit rule '{}' is invalid: {}".format(label, exc)) from exc
    if rule.max_requests <= 0 or rule.window_seconds <= 0:
        raise ValueError("Rate-limit rule '{}' must be positive".format(label))
    return rule


def load_rate_limit_rules(path: Union[str, Path]) -> Dict[str, RateLimitRule]:
    """Load per-endpoint rate-limit rules from a YAML file.

    The file holds a "rules" list of mappings with "endpoint",
    "max_requests" and optionally "window_seconds".

    Raises:
        FileNotFoundError: If the rules file does not exist.
        ValueError: If the YAML is invalid.
    """
    rules_path = Path(path)
    if not rules_path.exists():
        raise FileNotFoundError("Rate-limit rules file not found: {}".format(path))

    with open(rules_path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("rules", []), list):
        raise ValueError("Rate-limit rules file must contain a 'rules' list")

    rules: Dict[str, RateLimitRule] = {}
    for entry in raw.get("rules", []):
        if not isinstance(entry, dict) or not entry.get("endpoint"):
            raise ValueError("Every rate-limit rule needs an 'endpoint'")
        label = str(entry["endpoint"])
        rules[label] = _rule_from_dict(label, entry)
    return rules


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file (or its rules file) does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object")

    defaults = GatewayConfig()

    prov = raw.get("provider", {})
    provider = ProviderConfig(
        name=prov.get("name", defaults.provider.name),
        base_url=prov.get("base_url", defaults.provider.base_url),
        api_key_env=prov.get("api_key_env", defaults.provider.api_key_env),
        default_model=prov.get("default_model", defaults.provider.default_model),
        max_output_tokens=prov.get("max_output_tokens", defaults.provider.max_output_tokens),
        temperature=prov.get("temperature", defaults.provider.temperature),
        timeout=prov.get("timeout", defaults.provider.timeout),
        stub=bool(prov.get("stub", False)),
    )

    pay = raw.get("payments", {})
    payments = PaymentsConfig(
        base_url=pay.get("base_url", defaults.payments.base_url),
        api_key_env=pay.get("api_key_env", defaults.payments.api_key_env),
        store_id=_optional_str(pay.get("store_id")),
        product_id=_optional_str(pay.get("product_id")),
        variant_id=_optional_str(pay.get("variant_id")),
        timeout=pay.get("timeout", defaults.payments.timeout),
        max_customer_pages=pay.get("max_customer_pages", defaults.payments.max_customer_pages),
    )

    sec = raw.get("secrets", {})
    secrets = SecretsConfig(
        owner_key_env=sec.get("owner_key_env", defaults.secrets.owner_key_env),
        subscription_secret_env=sec.get(
            "subscription_secret_env", defaults.secrets.subscription_secret_env
        ),
        trial_secret_env=sec.get("trial_secret_env", defaults.secrets.trial_secret_env),
        webhook_secret_env=sec.get("webhook_secret_env", defaults.secrets.webhook_secret_env),
    )

    store_raw = raw.get("store", {})
    store = StoreConfig(
        url_env=store_raw.get("url_env", defaults.store.url_env),
        timeout=store_raw.get("timeout", defaults.store.timeout),
    )

    rate_limit_raw = raw.get("rate_limit", {})
    rules = default_rate_limit_rules()
    for label, data in rate_limit_raw.get("rules", {}).items():
        rules[label] = _rule_from_dict(label, data)
    rules_file = rate_limit_raw.get("rules_file")
    if rules_file:
        rules.update(load_rate_limit_rules(rules_file))
    rate_limit = RateLimitConfig(rules=rules, rules_file=rules_file)

    quota_raw = raw.get("quota", {})
    quota = QuotaConfig(
        premium_monthly=int(quota_raw.get("premium_monthly", 500)),
        free_trial=int(quota_raw.get("free_trial", 3)),
    )

    return GatewayConfig(
        provider=provider,
        payments=payments,
        secrets=secrets,
        store=store,
        rate_limit=rate_limit,
        quota=quota,
        environment_env=raw.get("environment_env", defaults.environment_env),
        log_file=raw.get("log_file", defaults.log_file),
        log_level=str(raw.get("log_level", defaults.log_level)),
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
