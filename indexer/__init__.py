"""Auction contract indexer: chain client, store, broadcast hub and the indexing state machine."""
