"""Agent loop, planning, dispatch and LLM routing."""
