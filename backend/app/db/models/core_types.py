import enum

class QueueStatus(str, enum.Enum):
    pending = "PENDING"
    processing = "PROCESSING"
    failed = "FAILED"
    conflict = "CONFLICT"
    skipped = "SKIPPED"

class SyncEntity(str, enum.Enum):
    unit = "UNIT"
    organization = "ORGANIZATION"

class SyncOperation(str, enum.Enum):
    create = "CREATE"
    update = "UPDATE"

class SyncDecision(str, enum.Enum):
    created = "CREATED"
    updated = "UPDATED"
    conflict_detected = "CONFLICT_DETECTED"
    conflict_resolved = "CONFLICT_RESOLVED"
    skipped = "SKIPPED"
    failed = "FAILED"

class ConflictResolution(str, enum.Enum):
    accept_registry = "accept_registry"
    keep_local = "keep_local"


# Statuts "actifs" : au plus une ligne par external_id dans ces statuts
ACTIVE_QUEUE_STATUSES = (QueueStatus.pending, QueueStatus.processing)

# Statuts terminaux en attente d'une action opérateur
OPERATOR_QUEUE_STATUSES = (QueueStatus.failed, QueueStatus.conflict)

# Vocabulaire des champs comparés entre copie locale et registre.
# "parent" = external_id du parent, jamais l'id local.
UNIT_FIELDS = ("name", "acronym", "parent", "unit_type", "category", "is_active")

# Organisation : entièrement possédée par le registre
ORGANIZATION_FIELDS = ("acronym", "name", "is_active")
