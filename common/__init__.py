"""
common - Shared configuration and logging for SmolBot.

Quick imports:
    from common.config import DATA_DIR, EMOJI_RANKINGS_PATH, TEXT_MODELS
    from common.logger import setup_logging, get_logger
"""
