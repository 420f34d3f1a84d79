"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Crawling and main-content extraction
- Text chunking with overlap
- Embedding generation and reranking
- FAISS-backed chunk storage
- Indexing jobs, retrieval and answer streaming
"""
