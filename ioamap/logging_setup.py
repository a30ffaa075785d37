import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(threadName)s] %(name)s: %(message)s"


def setup_logging(debug: bool = False) -> None:
    """Console logging for the CLI tools. Frames are hex-dumped at DEBUG."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.handlers = [handler]

    # asyncio chatter is only useful when chasing a session bug
    logging.getLogger("asyncio").setLevel(logging.WARNING)
