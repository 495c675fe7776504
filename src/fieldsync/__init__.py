"""fieldsync - durable upload queue for media captured on intermittently connected devices."""

__version__ = "0.1.0"
