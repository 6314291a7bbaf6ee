"""Local, cached text embeddings."""
