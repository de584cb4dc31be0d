"""
Media processing pipeline.

Modules:
--------
- state_machine: legal status transitions and stage metadata
- events: event names and the dispatcher that turns them into Celery tasks
- stages: transcribe / chunk / embed stage logic
- status: caller-facing progress view of an item
"""
