"""Python consumer for the assessment SSE endpoint."""
