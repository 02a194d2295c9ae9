"""Client side of VaultSync: remote API access, local vault and sync engine."""
