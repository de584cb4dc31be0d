"""
Transcript Processors Package

Modules:
--------
- chunker: Sentence-preserving word-window chunking of transcripts
- embedder: Embedding generation using sentence-transformers
"""
