"""Command-line interface for docchat.

- ``python -m src.cli upload`` -- store files as pending documents
- ``python -m src.cli process`` -- run the ingestion pipeline for a document
- ``python -m src.cli query`` -- search an owner's documents
- ``python -m src.cli reconcile`` -- fail stale documents, drop orphan chunks

The same entry point is installed as the ``docchat`` console script.
"""
