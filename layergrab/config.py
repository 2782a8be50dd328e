"""
Configuration module for the layer grabber.

Loads all configuration from environment variables with sensible defaults.
"""

import os


class Config:
    """
    Layer grabber configuration from environment variables.

    Loads all configuration values from environment variables with sensible defaults.
    All settings can be overridden by setting the corresponding environment variable.
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            SHIM_HOST: Shim registry bind address. Default: 127.0.0.1
            PING_SLEEPS_MS: Comma separated sleeps before each liveness probe.
                Default: 1,5,10,100,200,500,1000,2000
            PING_TIMEOUT: Timeout of a single liveness probe in seconds. Default: 2
            BLOB_CHUNK_SIZE: Read size for streamed layer bodies. Default: 1048576
            MAX_METADATA_SIZE: Maximum layer metadata body size. Default: 1048576
            MAX_LAYER_ID_LENGTH: Maximum layer id length. Default: 128
            MAX_REPOSITORY_NAME_LENGTH: Maximum repository name length. Default: 255
            MAX_TAG_LENGTH: Maximum tag length. Default: 128
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Shim registry
        self.SHIM_HOST = os.getenv("SHIM_HOST", "127.0.0.1")
        self.PING_SLEEPS_MS = [
            int(ms) for ms in os.getenv("PING_SLEEPS_MS", "1,5,10,100,200,500,1000,2000").split(",") if ms.strip()
        ]
        self.PING_TIMEOUT = float(os.getenv("PING_TIMEOUT", "2"))  # seconds

        # Push payloads
        self.BLOB_CHUNK_SIZE = int(os.getenv("BLOB_CHUNK_SIZE", str(1024 * 1024)))
        self.MAX_METADATA_SIZE = int(os.getenv("MAX_METADATA_SIZE", str(1024 * 1024)))

        # Validation limits
        self.MAX_LAYER_ID_LENGTH = int(os.getenv("MAX_LAYER_ID_LENGTH", "128"))
        self.MAX_REPOSITORY_NAME_LENGTH = int(os.getenv("MAX_REPOSITORY_NAME_LENGTH", "255"))
        self.MAX_TAG_LENGTH = int(os.getenv("MAX_TAG_LENGTH", "128"))

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"SHIM_HOST={self.SHIM_HOST}, "
            f"PING_SLEEPS_MS={self.PING_SLEEPS_MS}, "
            f"BLOB_CHUNK_SIZE={self.BLOB_CHUNK_SIZE}, "
            f"MAX_METADATA_SIZE={self.MAX_METADATA_SIZE})"
        )


# Global config instance
config = Config()
