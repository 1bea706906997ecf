"""
Retention policy enforcement for backups.

Retention is count based and evaluated per storage target on every run:
the existing artifact keys are rediscovered by listing the target, so no
bookkeeping survives between runs. Artifact keys are timestamp names
(YYYY.MM.DD.HH.MM.SS), so lexicographic order equals chronological order.
"""

import logging
from typing import Callable, Iterable, List


logger = logging.getLogger(__name__)


def select_expired(new_key: str, existing_keys: Iterable[str], keep: int) -> List[str]:
    """
    Decide which keys fall outside the retention window.

    Args:
        new_key: Key of the artifact uploaded in this run
        existing_keys: Keys already present in the storage target
        keep: Number of most recent artifacts to keep (<= 0 keeps everything)

    Returns:
        Keys to delete, oldest first. Never contains new_key when keep >= 1.
    """
    if keep <= 0:
        return []

    candidates = sorted(set(existing_keys) | {new_key})
    if len(candidates) <= keep:
        return []

    return candidates[:-keep]


class Cycler:
    """
    Applies the retention window of one (model, storage target) pair.
    """

    def __init__(self, name: str):
        """
        Args:
            name: Identity used in log messages, e.g. '<model>_<storage>'
        """
        self.name = name

    def run(self, new_key: str, existing_keys: Iterable[str], keep: int,
            delete_fn: Callable[[str], None]) -> List[str]:
        """
        Delete every artifact outside the retention window.

        A failed deletion is logged and the remaining keys are still tried.

        Returns:
            Keys that were deleted successfully
        """
        expired = select_expired(new_key, existing_keys, keep)
        if not expired:
            return []

        logger.info(f"[{self.name}] Keeping {keep} artifacts, removing {len(expired)}")

        deleted = []
        for key in expired:
            try:
                delete_fn(key)
                deleted.append(key)
                logger.info(f"[{self.name}] Removed {key}")
            except Exception as e:
                logger.error(f"[{self.name}] Failed to remove {key}: {e}")

        return deleted
