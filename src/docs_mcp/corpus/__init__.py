"""Corpus indexing and search: manifests, chunking, embeddings, ranking."""
