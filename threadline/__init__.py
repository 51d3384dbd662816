"""Threadline: posts, reply threads, feeds and likes."""
