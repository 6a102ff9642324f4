"""
Context assembly and memory pipeline for LLM chat sessions.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
