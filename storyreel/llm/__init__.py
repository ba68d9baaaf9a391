"""Clients for text, image and image-to-video generation services."""
