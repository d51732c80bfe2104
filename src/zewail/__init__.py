"""Zewail search assistant: streamed answer post-processing and Chainlit client."""
