"""Issue Assembly Worker Utilities"""

from .alerts import AlertClient
from .claude import ClaudeClient
from .db import DatabaseClient, get_db
from .prompts import get_prompt, preload_all_prompts, refresh_cache

__all__ = [
    'AlertClient',
    'ClaudeClient',
    'DatabaseClient',
    'get_db',
    'get_prompt',
    'preload_all_prompts',
    'refresh_cache',
]
