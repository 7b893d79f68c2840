"""Provider credential loading.

The NLB API authenticates with an access key pair. The pair is read once at
start-up, either from environment variables or from files mounted from a
Kubernetes Secret, and held in an AccessKeyCredential whose repr never shows
the secret, so it cannot leak through logs or tracebacks.

SECURITY INVARIANTS:
1. The access key secret is never logged
2. The access key id is only logged masked
3. Missing or partial credentials block start-up
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Checked in order; the first pair with both halves present wins
ACCESS_KEY_ENV_PAIRS: tuple[tuple[str, str], ...] = (
    ("ACCESS_KEY_ID", "ACCESS_KEY_SECRET"),
    ("ALIBABA_CLOUD_ACCESS_KEY_ID", "ALIBABA_CLOUD_ACCESS_KEY_SECRET"),
)

# Mounted secret files are bounded like any other input
MAX_CREDENTIAL_FILE_SIZE_BYTES = 4096


class CredentialError(Exception):
    """Raised when provider credentials are missing or unreadable.

    This is a fatal error that prevents operator startup.
    """

    pass


@dataclass(frozen=True)
class AccessKeyCredential:
    """Access key pair handed to the NLB SDK configuration."""

    access_key_id: str
    access_key_secret: str = field(repr=False)


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask all but the first `visible` characters."""
    if len(value) <= visible:
        return "*" * len(value)
    return value[:visible] + "*" * (len(value) - visible)


def _read_value(name: str) -> str:
    """Read NAME from the environment, or from the file named by NAME_FILE."""
    value = os.environ.get(name, "").strip()
    if value:
        return value

    file_path = os.environ.get(f"{name}_FILE", "").strip()
    if not file_path:
        return ""

    path = Path(file_path)
    try:
        if path.stat().st_size > MAX_CREDENTIAL_FILE_SIZE_BYTES:
            raise CredentialError(f"{name}_FILE exceeds {MAX_CREDENTIAL_FILE_SIZE_BYTES} bytes")
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise CredentialError(f"Failed to read {name}_FILE {file_path}: {e}") from e


def load_credential() -> AccessKeyCredential:
    """Load the provider access key pair.

    Environment Variables:
        ACCESS_KEY_ID / ACCESS_KEY_SECRET: Access key pair
        ALIBABA_CLOUD_ACCESS_KEY_ID / ALIBABA_CLOUD_ACCESS_KEY_SECRET: Alternative names
        <NAME>_FILE: Path to a file holding the value (mounted secrets)

    Returns:
        The access key pair.

    Raises:
        CredentialError: If no complete pair is configured.
    """
    for id_var, secret_var in ACCESS_KEY_ENV_PAIRS:
        access_key_id = _read_value(id_var)
        access_key_secret = _read_value(secret_var)

        if access_key_id and access_key_secret:
            logger.info(
                "Loaded provider credentials",
                extra={"source": id_var, "access_key_id": mask_secret(access_key_id)},
            )
            return AccessKeyCredential(access_key_id, access_key_secret)

        if access_key_id or access_key_secret:
            missing = secret_var if access_key_id else id_var
            raise CredentialError(f"Incomplete credentials: {missing} is not set")

    raise CredentialError(
        "Provider credentials are required: set ACCESS_KEY_ID and ACCESS_KEY_SECRET "
        "(or their _FILE variants)"
    )
