"""
Local UI preferences (bandwidth mode, visibility toggles). Kept on this
machine only, in a small JSON file.
"""

import json
import logging
import os
from typing import Optional

from pydantic import ValidationError

from config import settings
from models import Preferences

logger = logging.getLogger(__name__)


class PreferencesStore:
    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.PREFERENCES_FILE

    def load(self) -> Optional[Preferences]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r") as f:
                return Preferences.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            return None

    def save(self, prefs: Preferences):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(prefs.model_dump(mode="json"), f, indent=2)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved preferences to {self.path}")
