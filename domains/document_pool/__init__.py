"""
Document Pool Domain

Keeps a live, consistent view over documents fed by several ingestion
pipelines:
- Sources → Normalize each pipeline's rows into one document model
- Merger → Cross-source pages sorted by recency
- Folders / Health → Folder forest and stuck/failed document categories
- Scheduler / Bridge → Debounced, cancellable reloads driven by change feeds
"""

__all__ = ["engine", "sources"]
