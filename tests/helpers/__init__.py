"""Test helpers for attoteam."""

from tests.helpers.fakes import FakeSpawner, RecordingNotifier, fast_settings
from tests.helpers.teams import new_team

__all__ = ["FakeSpawner", "RecordingNotifier", "fast_settings", "new_team"]
