"""VaultSync - two-way synchronization between a local vault and a cloud drive folder."""

__version__ = "0.1.0"
