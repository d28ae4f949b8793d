"""A terminal coding assistant driven by an OpenAI-compatible chat endpoint."""
