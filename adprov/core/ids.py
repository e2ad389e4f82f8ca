"""Identifier strategy for adprov lifecycle handlers.

Physical identifiers returned to the declarative layer must be deterministic:
re-issuing the same Create must converge on the same physical resource
instead of creating a duplicate.

Summary
-------
+---------------+----------------------------------+-------------------------------+
| Resource      | Physical id                      | Example                       |
+===============+==================================+===============================+
| Subscription  | ``subscription_physical_id()``   | ``"sub-123456789012"``        |
+---------------+----------------------------------+-------------------------------+
| Instance      | EC2 instance id                  | ``"i-0abc12345def67890"``     |
+---------------+----------------------------------+-------------------------------+

Instances cannot choose their own id, so the compute workflow tags every
launch with :func:`idempotency_key` and looks that tag up before launching.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Mapping
from typing import Final

__all__ = [
    "SUBSCRIPTION_ID_PREFIX",
    "subscription_physical_id",
    "idempotency_key",
    "is_instance_id",
]

logger = logging.getLogger(__name__)

#: Prefix of every subscription physical id.
SUBSCRIPTION_ID_PREFIX: Final[str] = "sub-"

#: EC2 instance ids: ``i-`` followed by 8 (legacy) or 17 hex characters.
_INSTANCE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^i-(?:[0-9a-f]{8}|[0-9a-f]{17})$")

#: RunInstances ``ClientToken`` accepts at most 64 ASCII characters.
_MAX_KEY_LENGTH: Final[int] = 64


def subscription_physical_id(account_id: str) -> str:
    """Return the physical id of the subscription owned by *account_id*.

    Example::

        assert subscription_physical_id("123456789012") == "sub-123456789012"
    """
    return f"{SUBSCRIPTION_ID_PREFIX}{account_id}"


def idempotency_key(namespace: str, properties: Mapping[str, str], scope: str = "") -> str:
    """Derive a stable token from *properties*.

    The same namespace, scope and property set always produce the same key,
    independent of mapping order.

    Args:
        namespace: Short prefix naming the workflow (e.g. ``"adprov"``).
        properties: Input properties that define the logical resource.
        scope: Optional extra discriminator, typically
            ``"<stack id>/<logical id>"``.

    Returns:
        ``"<namespace>-<hex digest>"``, at most 64 characters.
    """
    digest = hashlib.sha256()
    digest.update(scope.encode("utf-8"))
    for key in sorted(properties):
        digest.update(b"\x00")
        digest.update(key.encode("utf-8"))
        digest.update(b"=")
        digest.update(properties[key].encode("utf-8"))
    token = f"{namespace}-{digest.hexdigest()[:32]}"
    return token[:_MAX_KEY_LENGTH]


def is_instance_id(value: str | None) -> bool:
    """Return ``True`` if *value* looks like an EC2 instance id."""
    return bool(value) and _INSTANCE_ID_RE.match(value or "") is not None
