"""Claude-backed collaborators for the assessment stream."""
