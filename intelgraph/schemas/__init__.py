"""Pydantic models for queue tasks, stored records, LLM replies and job summaries."""
