from __future__ import annotations

import logging
import os

from shipyard.errors import RuntimeStartupError
from shipyard.framework.config import IdentityConfig

logger = logging.getLogger(__name__)


def drop_privileges(identity: IdentityConfig) -> bool:
    """Switch to the runtime identity when running as root.

    Returns True when a switch happened, False when the process was already
    unprivileged. The application must never start with an effective uid of 0.
    """

    if not hasattr(os, "geteuid"):
        raise RuntimeStartupError("Privilege drop requires a POSIX platform")

    switched = False
    if os.geteuid() == 0:
        try:
            os.setgroups([identity.gid])
            os.setgid(identity.gid)
            os.setuid(identity.uid)
        except OSError as exc:
            raise RuntimeStartupError(
                f"Cannot drop privileges to {identity.owner} (uid={identity.uid}, gid={identity.gid}): {exc}"
            ) from exc
        switched = True
        logger.info("Dropped privileges to %s (uid=%d, gid=%d)", identity.owner, identity.uid, identity.gid)
    else:
        logger.info("Already unprivileged (uid=%d, gid=%d)", os.geteuid(), os.getegid())

    if os.geteuid() == 0:
        raise RuntimeStartupError("Refusing to start the application as root")
    return switched
