"""
Taxonomie d'erreurs de la synchro registre.

Règle de propagation :
- erreurs de frontière client (permanentes, ou transitoires épuisées) -> abort du cycle
- erreurs par item -> jamais d'abort du worker ni du cycle
"""

from __future__ import annotations


class SyncError(Exception):
    """Base de toutes les erreurs de synchro."""


# ---------- FRONTIÈRE REGISTRE ----------
class TransientTransportError(SyncError):
    """Registre injoignable / timeout / 5xx. Retry interne au client, puis backoff de la queue."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentClientError(SyncError):
    """4xx ou payload illisible : jamais retenté."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncCycleError(SyncError):
    """Cycle interrompu (erreur fatale côté client registre). Porte les compteurs partiels."""

    def __init__(self, message: str, summary: object | None = None) -> None:
        super().__init__(message)
        self.summary = summary


# ---------- PAR ITEM ----------
class SnapshotValidationError(SyncError):
    """Snapshot externe illisible localement : item SKIPPED, le cycle continue."""

    def __init__(self, message: str, payload: dict | None = None) -> None:
        super().__init__(message)
        self.payload = payload


class StructuralConflictError(SyncError):
    """Parent cyclique ou divergence irréconciliable : item CONFLICT, action opérateur."""

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or []


class RepositoryWriteError(SyncError):
    """Échec d'écriture transactionnelle : ack_retry jusqu'au plafond, puis FAILED."""


class MissingParentError(RepositoryWriteError):
    """Parent introuvable localement et absent de la queue active."""


class ItemTimeoutError(SyncError):
    """Traitement plus long que le bail : rollback, une tentative consommée."""


# ---------- QUEUE / LEDGER ----------
class QueueStateError(SyncError):
    """Transition de statut interdite (ex : reset d'un item PENDING, bail perdu)."""


class QueueItemNotFound(QueueStateError):
    pass


class LedgerImmutableError(SyncError):
    """Tentative de modification/suppression d'une entrée d'historique."""
