"""calsync: unified calendar synchronization layer."""

__version__ = "0.1.0"
