"""RabbitMQ consumer adapter feeding acknowledgeable messages into a pipeline."""

__version__ = "0.1.0"
