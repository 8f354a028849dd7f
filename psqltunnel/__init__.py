"""Terminal PostgreSQL client with AWS bastion tunnelling."""

__version__ = "0.1.0"
