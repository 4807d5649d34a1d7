"""Configuration for a harness run."""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, SecretStr

from conformance_harness.context import Context


class HarnessConfig(BaseModel):
    """Configuration for the server under test and the callback endpoint."""

    server_url: str
    fhir_version: str = "r4"
    client_id: str | None = None
    client_secret: SecretStr | None = None
    scopes: str = "launch/patient openid fhirUser offline_access patient/*.read"
    redirect_uri: str | None = None
    callback_base_url: str = "http://localhost:4567"
    callback_secret: SecretStr
    data_dir: Path = Path(".conformance-harness")
    request_timeout: float = 30.0
    bearer_token: SecretStr | None = None

    @property
    def effective_redirect_uri(self) -> str:
        base_url = self.callback_base_url.rstrip("/")
        return self.redirect_uri or f"{base_url}/oauth2/redirect"

    def initial_context(self) -> Context:
        """Context values seeded from configuration; unset options are omitted."""
        values: dict[str, Any] = {
            "url": self.server_url,
            "fhir_version": self.fhir_version,
            "client_id": self.client_id,
            "client_secret": (
                self.client_secret.get_secret_value() if self.client_secret else None
            ),
            "scopes": self.scopes,
            "redirect_uri": self.effective_redirect_uri,
            "token": (
                self.bearer_token.get_secret_value() if self.bearer_token else None
            ),
        }
        return Context(
            {key: value for key, value in values.items() if value is not None}
        )


def load_config(source: str) -> HarnessConfig:
    """Parse configuration from inline JSON or from a JSON/YAML file path."""
    stripped = source.strip()
    if stripped.startswith("{"):
        return HarnessConfig(**json.loads(stripped))

    path = Path(source)
    text = path.read_text()
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    return HarnessConfig(**data)
