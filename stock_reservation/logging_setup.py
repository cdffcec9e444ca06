import logging


def configure_logging(level: str = "INFO") -> None:
    # plain messages, the [order=...] / [product=...] prefixes carry the context
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
