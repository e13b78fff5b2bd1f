"""Claude-Gemini: compile @path queries into context-rich prompts for the Gemini CLI."""

__version__ = "1.0.0"
