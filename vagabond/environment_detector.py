"""
Vagrant Cloud Environment Detector

Builds a CloudConfig from environment variables and validates it.
"""

import os
from typing import List, Optional
from urllib.parse import urlparse

from .exceptions import EnvironmentValidationError
from .file_validator import ValidationResult
from .models import DEFAULT_API_URL, CloudConfig


class CloudEnvironmentDetector:
    """Detects and validates Vagrant Cloud settings from the environment"""

    TOKEN_VARS = ["VAGRANT_CLOUD_TOKEN", "ATLAS_TOKEN"]
    URL_VAR = "VAGRANT_CLOUD_URL"

    OPTIONAL_VARS = {
        "VAGRANT_CLOUD_REQUEST_TIMEOUT": (30.0, float),
        "VAGRANT_CLOUD_UPLOAD_TIMEOUT": (3600.0, float),
        "VAGRANT_CLOUD_MAX_RETRIES": (3, int),
        "VAGRANT_CLOUD_MAX_UPLOAD_ATTEMPTS": (3, int),
        "VAGRANT_CLOUD_CHUNK_SIZE": (1024 * 1024, int),
        "VAGRANT_CLOUD_DIRECT_UPLOAD": (False, "bool"),
    }

    def get_token(self) -> Optional[str]:
        for var in self.TOKEN_VARS:
            value = os.getenv(var)
            if value:
                return value
        return None

    def is_publish_enabled(self) -> bool:
        """Check if an API token is available"""
        return self.get_token() is not None

    def get_missing_variables(self) -> List[str]:
        if self.is_publish_enabled():
            return []
        return [self.TOKEN_VARS[0]]

    def validate_environment(self) -> ValidationResult:
        missing_vars = self.get_missing_variables()
        if missing_vars:
            return ValidationResult(
                is_valid=False,
                error_message=f"Missing required environment variables: {', '.join(missing_vars)}",
                validation_type="environment"
            )

        api_url = os.getenv(self.URL_VAR)
        if api_url and not self._validate_api_url(api_url):
            return ValidationResult(
                is_valid=False,
                error_message=f"Invalid API URL format: {api_url}",
                validation_type="environment"
            )

        return ValidationResult(is_valid=True)

    def get_cloud_config(self) -> CloudConfig:
        """Extract and validate configuration from environment"""
        validation = self.validate_environment()
        if not validation.is_valid:
            raise EnvironmentValidationError(
                validation.error_message,
                missing_vars=self.get_missing_variables()
            )

        config_kwargs = {}
        for var_name, (default_value, var_type) in self.OPTIONAL_VARS.items():
            env_value = os.getenv(var_name)
            param = self._env_var_to_param(var_name)
            if not env_value:
                config_kwargs[param] = default_value
            elif var_type == "bool":
                config_kwargs[param] = env_value.strip().lower() in ("1", "true", "yes", "on")
            else:
                try:
                    config_kwargs[param] = var_type(env_value)
                except ValueError:
                    config_kwargs[param] = default_value

        return CloudConfig(
            api_url=os.getenv(self.URL_VAR) or DEFAULT_API_URL,
            token=self.get_token(),
            **config_kwargs
        )

    def _validate_api_url(self, url: str) -> bool:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    def _env_var_to_param(self, env_var: str) -> str:
        # VAGRANT_CLOUD_UPLOAD_TIMEOUT -> upload_timeout
        return env_var.replace("VAGRANT_CLOUD_", "").lower()

    def get_environment_summary(self) -> dict:
        """Summary for debugging, with the token masked"""
        token = self.get_token()
        summary = {
            "publish_enabled": self.is_publish_enabled(),
            "missing_variables": self.get_missing_variables(),
            "detected_variables": {
                "token": CloudConfig(token=token).masked_token(),
                self.URL_VAR: os.getenv(self.URL_VAR),
            }
        }
        for var in self.OPTIONAL_VARS:
            value = os.getenv(var)
            if value:
                summary["detected_variables"][var] = value
        return summary
