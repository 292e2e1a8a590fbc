from __future__ import annotations

import re

from shipwright.errors import ConfigurationError

SAFE_OWNER_PATTERN = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,38})$")
SAFE_REPO_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9._-]{0,98}[a-zA-Z0-9])?$")


def validate_owner(value: str) -> None:
    if not SAFE_OWNER_PATTERN.match(value):
        raise ConfigurationError(
            f'Invalid owner: "{value}". Must match pattern: {SAFE_OWNER_PATTERN.pattern}'
        )


def validate_repo_name(value: str) -> None:
    if not SAFE_REPO_NAME_PATTERN.match(value):
        raise ConfigurationError(
            f'Invalid repo name: "{value}". Must match pattern: {SAFE_REPO_NAME_PATTERN.pattern}'
        )
    if ".." in value:
        raise ConfigurationError(
            f'Invalid repo name: "{value}". Consecutive dots are not allowed.'
        )


def validate_template_repo(value: str) -> None:
    parts = value.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(f'Invalid template: "{value}". Expected format "owner/repo".')
    validate_owner(parts[0])
    validate_repo_name(parts[1])


def validate_timeout_minutes(value: float) -> None:
    if value <= 0:
        raise ConfigurationError("Invalid timeout: must be a positive number of minutes.")
    if value > 180:
        raise ConfigurationError(
            f"Invalid timeout: {value} minutes exceeds maximum of 180 minutes."
        )


def validate_budget(value: float) -> None:
    if value <= 0:
        raise ConfigurationError("Invalid budget: must be a positive dollar amount.")
