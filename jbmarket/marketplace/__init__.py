"""Marketplace clients, release feeds and archive prefetchers."""
