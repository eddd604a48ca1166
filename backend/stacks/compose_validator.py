"""
Compose YAML validator.

Validates compose documents before they are written to disk and handed to the
compose tool. The compose tool performs full schema validation at deploy
time; this catches unsafe YAML and obviously malformed documents early.
"""

from typing import Any, Dict

import yaml


class ComposeValidationError(Exception):
    """Raised when compose file validation fails"""
    pass


class ComposeValidator:
    """Safety and shape checks for compose documents."""

    # Dangerous YAML tags that could execute code
    DANGEROUS_TAGS = [
        '!!python/object',
        '!!python/name',
        '!!python/module',
        '!!python/object/apply',
        '!!python/object/new',
    ]

    def validate_yaml_safety(self, compose_yaml: str) -> None:
        """
        Validate YAML doesn't contain dangerous tags.

        Args:
            compose_yaml: YAML content as string

        Raises:
            ComposeValidationError: If unsafe tags found
        """
        for tag in self.DANGEROUS_TAGS:
            if tag in compose_yaml:
                raise ComposeValidationError(
                    f"Unsafe YAML tag detected: {tag}. This could execute arbitrary code."
                )

    def parse(self, compose_yaml: str) -> Dict[str, Any]:
        """
        Safely parse and shape-check a compose document.

        Returns:
            Parsed document

        Raises:
            ComposeValidationError: If the YAML is invalid or has no services
        """
        self.validate_yaml_safety(compose_yaml)

        try:
            document = yaml.safe_load(compose_yaml)
        except yaml.YAMLError as e:
            raise ComposeValidationError(f"Invalid YAML: {e}")

        if not isinstance(document, dict):
            raise ComposeValidationError("Compose file must be a YAML mapping")

        services = document.get('services')
        if not isinstance(services, dict) or not services:
            raise ComposeValidationError("Compose file must define at least one service under 'services'")

        for service_name, service in services.items():
            if not isinstance(service, dict):
                raise ComposeValidationError(f"Service '{service_name}' must be a mapping")
            if 'image' not in service and 'build' not in service:
                raise ComposeValidationError(f"Service '{service_name}' must specify 'image' or 'build'")

        return document

    def validate_env(self, env_content: str) -> None:
        """
        Check .env syntax: KEY=VALUE lines, comments and blanks.

        Raises:
            ComposeValidationError: On the first malformed line
        """
        for line_number, line in enumerate(env_content.splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith('#'):
                continue
            if stripped.startswith('export '):
                stripped = stripped[len('export '):].lstrip()
            key, sep, _ = stripped.partition('=')
            if not sep or not key.strip() or ' ' in key.strip():
                raise ComposeValidationError(f".env line {line_number} is not KEY=VALUE: {line}")
