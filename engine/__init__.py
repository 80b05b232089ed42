"""
Engine Module

Encounter lifecycle on top of the persistence layer:
- EncounterService: start/end state machine and checkpoint writes
- EncounterSync: telemetry subscriptions, throttling, process lifecycle
- TelemetrySource / LiveTelemetry: the notification contract
"""

from .encounter_service import EncounterService, EncounterState, generate_encounter_id
from .encounter_sync import EncounterSync, CheckpointThrottle
from .supervisor import TaskSupervisor
from .telemetry import TelemetrySource, LiveTelemetry

__all__ = [
    'EncounterService',
    'EncounterState',
    'generate_encounter_id',
    'EncounterSync',
    'CheckpointThrottle',
    'TaskSupervisor',
    'TelemetrySource',
    'LiveTelemetry',
]
