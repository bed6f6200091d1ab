import logging
import colorlog


SILENCED_LIBRARIES = [
    'interactions', 'websockets', 'asyncio', 'httpx', 'httpcore',
    'anthropic', 'aiohttp.access',
]

_configured = False


def setup_logging(level=logging.DEBUG, log_file=None):
    """Configure the root logger once so every module logger inherits it."""
    global _configured
    root_logger = logging.getLogger()
    if _configured:
        return root_logger
    _configured = True

    root_logger.setLevel(level)

    # Create a console handler with a color formatter
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    color_formatter = colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s %(module)s %(levelname)-8s: %(message)s%(reset)s",
        datefmt='%Y-%m-%d %H:%M:%S',  # Format for the timestamp
        reset=True,
        log_colors={
            'DEBUG':    'cyan',
            'INFO':     'green',
            'WARNING':  'yellow',
            'ERROR':    'red',
            'CRITICAL': 'red,bg_white',
        },
        secondary_log_colors={},
        style='%'
    )
    console_handler.setFormatter(color_formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)

    # Now get the logger for the libraries you want to silence and set its level
    for library in SILENCED_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)

    return root_logger


def get_logger(name):
    return logging.getLogger(name)
