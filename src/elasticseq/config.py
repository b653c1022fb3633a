"""
elasticseq Config — Connection Settings
=======================================

Connection settings shared by every component that talks to Elasticsearch.

Settings are taken from keyword arguments or, via ``from_env()``, from
``ELASTICSEQ_*`` environment variables:

    ELASTICSEQ_HOSTS            comma-separated node URLs
    ELASTICSEQ_API_KEY          API key (wins over basic auth)
    ELASTICSEQ_USERNAME         basic auth user
    ELASTICSEQ_PASSWORD         basic auth password
    ELASTICSEQ_VERIFY_CERTS     "0"/"false"/"no" disables verification
    ELASTICSEQ_SEQUENCE_INDEX   administrative index for counter documents
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from elasticsearch import Elasticsearch

DEFAULT_HOSTS = ["http://localhost:9200"]
DEFAULT_SEQUENCE_INDEX = "sequence"

_FALSY = {"0", "false", "no", "off"}


@dataclass
class ConnectionSettings:
    """How to reach an Elasticsearch cluster."""

    hosts: List[str] = field(default_factory=lambda: list(DEFAULT_HOSTS))
    api_key: Optional[str] = None
    basic_auth: Optional[Tuple[str, str]] = None
    verify_certs: bool = True
    sequence_index: str = DEFAULT_SEQUENCE_INDEX

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> "ConnectionSettings":
        """
        Build settings from the environment.

        Args:
            environ: Mapping to read instead of ``os.environ`` (for tests)
            **overrides: Explicit values; ``None`` values are ignored

        Returns:
            ConnectionSettings
        """
        env = os.environ if environ is None else environ

        values: Dict[str, Any] = {}
        hosts = env.get("ELASTICSEQ_HOSTS")
        if hosts:
            values["hosts"] = [h.strip() for h in hosts.split(",") if h.strip()]
        if env.get("ELASTICSEQ_API_KEY"):
            values["api_key"] = env["ELASTICSEQ_API_KEY"]
        if env.get("ELASTICSEQ_USERNAME"):
            values["basic_auth"] = (
                env["ELASTICSEQ_USERNAME"],
                env.get("ELASTICSEQ_PASSWORD", ""),
            )
        if "ELASTICSEQ_VERIFY_CERTS" in env:
            values["verify_certs"] = (
                env["ELASTICSEQ_VERIFY_CERTS"].strip().lower() not in _FALSY
            )
        if env.get("ELASTICSEQ_SEQUENCE_INDEX"):
            values["sequence_index"] = env["ELASTICSEQ_SEQUENCE_INDEX"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for the ``Elasticsearch`` constructor."""
        conn_kwargs: Dict[str, Any] = {
            "hosts": self.hosts or list(DEFAULT_HOSTS),
            "verify_certs": self.verify_certs
        }

        if self.api_key:
            conn_kwargs["api_key"] = self.api_key
        elif self.basic_auth:
            conn_kwargs["basic_auth"] = self.basic_auth

        return conn_kwargs


def connect(settings: Optional[ConnectionSettings] = None) -> Elasticsearch:
    """Open a new client for the given settings (environment if omitted)."""
    settings = settings or ConnectionSettings.from_env()
    return Elasticsearch(**settings.client_kwargs())
