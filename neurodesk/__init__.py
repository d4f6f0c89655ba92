"""
NeuroDesk - natural language to shell command orchestration.

Turns free-form requests into deterministic intents, install plans or
LLM-synthesized commands, and runs them behind consent and sudo prompts.
"""

__version__ = "0.3.0"
