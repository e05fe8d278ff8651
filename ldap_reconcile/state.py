"""
Persistence of recorded object state between runs.

The state file maps each declared object name to the state recorded after its
last successful create, update or import.
"""

import os
import json
import logging
import tempfile
from typing import Dict, Optional

from ldap_reconcile.models import ObjectState, ConfigConversionError

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateError(Exception):
    """Raised when the state file cannot be read or written."""
    pass


class StateStore:
    """JSON file holding recorded ObjectState records keyed by object name."""

    def __init__(self, path: str):
        self.path = path
        self.objects: Dict[str, ObjectState] = {}

    def load(self) -> 'StateStore':
        """
        Load recorded states from disk; a missing file means nothing is recorded yet.

        Raises:
            StateError: If the file is not valid JSON or holds invalid records
        """
        if not os.path.exists(self.path):
            logger.info(f"No state file at {self.path}, starting with empty state")
            self.objects = {}
            return self

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {self.path}: {e}")
        except OSError as e:
            raise StateError(f"Cannot read state file {self.path}: {e}")

        if not isinstance(document, dict) or document.get('version') != STATE_VERSION:
            raise StateError(f"Unsupported state file format in {self.path}")

        objects = {}
        for name, record in (document.get('objects') or {}).items():
            try:
                objects[name] = ObjectState.from_dict(record)
            except ConfigConversionError as e:
                raise StateError(f"Invalid state for object {name}: {e}")
        self.objects = objects
        logger.debug(f"Loaded {len(objects)} recorded objects from {self.path}")
        return self

    def save(self):
        """Write the state file atomically."""
        document = {
            'version': STATE_VERSION,
            'objects': {name: state.to_dict() for name, state in sorted(self.objects.items())},
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp_path = tempfile.mkstemp(prefix='.state-', dir=directory)
        except OSError as e:
            raise StateError(f"Cannot write state file {self.path}: {e}")

        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StateError(f"Cannot write state file {self.path}: {e}")

    def get(self, name: str) -> Optional[ObjectState]:
        return self.objects.get(name)

    def put(self, name: str, state: ObjectState):
        self.objects[name] = state
        self.save()

    def remove(self, name: str):
        if self.objects.pop(name, None) is not None:
            self.save()

    def names(self):
        return list(self.objects)
