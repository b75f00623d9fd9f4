# core/key_cache.py
"""On-disk cache of the last key list pushed through the control surface"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)


class KeyCache:
    """Reads and writes ``{"keys": [...], "updatedAt": ...}``"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[str]:
        """
        Loads cached keys.

        Returns:
            list: Cached keys, or an empty list if the file is missing or unreadable
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"❌ Failed to load key cache {self.path}: {e}")
            return []

        keys = data.get('keys') if isinstance(data, dict) else None
        if not isinstance(keys, list):
            logger.warning(f"⚠️ Key cache {self.path} has no key list, ignoring")
            return []

        keys = [key for key in keys if isinstance(key, str) and key]
        logger.info(f"Loaded {len(keys)} keys from cache")
        return keys

    def save(self, keys: Sequence[str]) -> bool:
        """Writes the key list; errors are logged, never raised"""
        data = {
            'keys': list(keys),
            'updatedAt': datetime.now(timezone.utc).isoformat()
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            return True
        except OSError as e:
            logger.error(f"❌ Failed to save key cache: {e}")
            return False
