"""Progressive extraction and SSE delivery for Claude assessment streams."""
