"""Core engine: configuration, storage, consensus, scheduling and the ledger."""
