"""Request routing between assessment tracks."""

from __future__ import annotations

from enum import Enum

from schemas.streaming import AssessStreamRequest


class Track(str, Enum):
    ASSESS = "assess"


def route_request(request: AssessStreamRequest) -> Track:
    """Every request goes to the assessment track.

    Intent classification is left to the model itself, which reports the
    question type in its structured response.
    """
    return Track.ASSESS
