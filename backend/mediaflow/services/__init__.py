"""
Business logic services.

Modules:
--------
- ingestion: source descriptors → canonical MediaItem, first pipeline event
- quota_ledger: tier limits, usage ledger and cost estimation
- recovery: stuck-item detection and the recovery decision matrix
- search: vector similarity search over embedded chunks
- pipeline: state machine, events, stage logic, status view
- processors: transcript chunking and embedding generation
- providers: transcription providers (captions, Whisper)
"""
