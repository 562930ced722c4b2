"""Hospital waiting-queue with real-time synchronization (MQTT-based).

The system is split into:
- a Queue Engine (tokens, positions, status transitions) backed by a SQL store
- an Event Broadcaster that fans change events out to connected observers
- an MQTT service exposing both to registration desks, doctors and dashboards

See `python -m hospital_queue.app -h` for how to run.
"""
