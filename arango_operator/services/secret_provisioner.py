"""
Encryption-key secret provisioning.

Secrets are immutable once created: provisioning never overwrites an existing
secret. Key material comes from a cryptographically secure source; the
provisioner only persists what it is given, except in
``ensure_encryption_key_secret`` where the reconciler asks it to mint a key for
a deployment that references a missing secret.
"""
import secrets
from typing import Dict, List, Optional

from arango_operator.config.logging import get_logger
from arango_operator.exceptions import AlreadyExistsError, ValidationError
from arango_operator.services.kubernetes import deployment_labels

logger = get_logger(__name__)

# Key length required by RocksDB encryption at rest
ENCRYPTION_KEY_LENGTH = 32
# Name of the payload entry holding the raw key bytes
ENCRYPTION_KEY_FIELD = "key"

_NAME_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def generate_encryption_key() -> bytes:
    return secrets.token_bytes(ENCRYPTION_KEY_LENGTH)


def generate_secret_name(prefix: str, suffix_length: int = 8) -> str:
    """
    Build a secret name with a random suffix, e.g. ``mydb-enc-k3x9q0za``.

    Collisions are unlikely but not impossible; creation still fails with
    AlreadyExistsError on a clash.
    """
    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(suffix_length))
    return f"{prefix.lower().rstrip('-')}-{suffix}"


async def create_encryption_key_secret(
    platform,
    name: str,
    namespace: str,
    key: bytes,
    labels: Optional[Dict[str, str]] = None,
) -> None:
    """
    Store an encryption key as a namespace-scoped secret.

    Args:
        platform: Platform client (see KubernetesPlatform)
        name: Secret name, chosen by the caller
        namespace: Kubernetes namespace
        key: Raw key bytes, exactly 32 bytes
        labels: Optional labels for the secret

    Raises:
        ValidationError: If the key has the wrong length
        AlreadyExistsError: If a secret with this name exists (left untouched)
        ForbiddenError/UnauthorizedError: If the operator lacks permission
    """
    if len(key) != ENCRYPTION_KEY_LENGTH:
        raise ValidationError(
            f"Encryption key must be {ENCRYPTION_KEY_LENGTH} bytes, got {len(key)}",
            details={"secret_name": name, "key_length": len(key)},
        )

    await platform.create_secret(name, namespace, {ENCRYPTION_KEY_FIELD: key}, labels=labels)

    logger.info(
        "encryption_key_secret_created",
        secret_name=name,
        namespace=namespace,
    )


async def ensure_encryption_key_secret(platform, deployment_name: str, name: str, namespace: str) -> bool:
    """
    Make sure the referenced encryption-key secret exists.

    Returns:
        True if the secret was created by this call, False if it already existed
    """
    if await platform.get_secret(name, namespace) is not None:
        logger.debug("encryption_key_secret_exists", secret_name=name, namespace=namespace)
        return False

    try:
        await create_encryption_key_secret(
            platform,
            name,
            namespace,
            generate_encryption_key(),
            labels=deployment_labels(deployment_name),
        )
    except AlreadyExistsError:
        # Created between our read and our write
        logger.info("encryption_key_secret_created_concurrently", secret_name=name, namespace=namespace)
        return False
    return True


async def delete_owned_secrets(platform, deployment_name: str, namespace: str) -> List[str]:
    """Delete the secrets the operator created for a deployment."""
    names = await platform.list_secret_names(namespace, deployment_labels(deployment_name))
    for name in names:
        await platform.delete_secret(name, namespace)
        logger.info("owned_secret_deleted", secret_name=name, namespace=namespace)
    return names
