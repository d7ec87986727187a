"""Order pipeline: order API plus a Redis Streams worker that processes orders."""

__version__ = "0.1.0"
