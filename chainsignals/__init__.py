"""On-chain trading signal ingestion, portfolio replay and performance statistics."""
