from .logger import setup_logger
from .text import count_words, tail_text, truncate_text, truncate_words

__all__ = [
    "setup_logger",
    "count_words",
    "tail_text",
    "truncate_text",
    "truncate_words",
]
