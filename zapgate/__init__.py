"""zapgate: NIP-57 zap paywall for a single Lightning Address."""
