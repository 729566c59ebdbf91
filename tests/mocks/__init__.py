"""Test doubles for procbridge tests."""

from .recording_channel import RecordingChannel

__all__ = ["RecordingChannel"]
