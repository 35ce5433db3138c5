"""
Property Store

Persistence for the sync pipeline: canonical listings (upsert by record id),
sync runs, the append-only error log and audit history, and duplicate
candidates awaiting resolution.

InMemoryPropertyStore backs tests and dry runs; SupabasePropertyStore writes
to the tables defined in dbschema/mls_sync_schema.sql.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import Client

from .models import (
    CanonicalPropertyRecord,
    DuplicateCandidate,
    ResolvedAction,
    SyncError,
    SyncRunSnapshot,
    parse_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


def run_row(snapshot: SyncRunSnapshot) -> Dict[str, Any]:
    """Flatten a run snapshot into a storable row"""
    row = snapshot.to_dict()
    row['error_count'] = len(snapshot.errors)
    row['updated_at'] = utcnow().isoformat()
    return row


class PropertyStore(ABC):
    """Async persistence interface used by the orchestrator and detector"""

    # Properties

    @abstractmethod
    async def get_property(self, record_id: str) -> Optional[CanonicalPropertyRecord]:
        ...

    @abstractmethod
    async def upsert_property(self, record: CanonicalPropertyRecord) -> str:
        """Insert or replace a listing keyed by record_id; returns 'created' or 'updated'"""

    @abstractmethod
    async def list_recent_properties(self, provider_id: Optional[str] = None,
                                     limit: int = 500) -> List[CanonicalPropertyRecord]:
        """Most recently synced listings that have not been merged away"""

    @abstractmethod
    async def mark_property_merged(self, record_id: str, merged_into: str) -> bool:
        ...

    # Runs

    @abstractmethod
    async def save_sync_run(self, snapshot: SyncRunSnapshot):
        ...

    @abstractmethod
    async def get_sync_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_sync_runs(self, provider_id: Optional[str] = None, status: Optional[str] = None,
                             since: Optional[datetime] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Runs ordered newest first"""

    # Errors

    @abstractmethod
    async def append_sync_error(self, error: SyncError):
        ...

    @abstractmethod
    async def update_sync_error(self, error: SyncError):
        ...

    @abstractmethod
    async def get_sync_error(self, error_id: str) -> Optional[SyncError]:
        ...

    @abstractmethod
    async def list_sync_errors(self, provider_id: Optional[str] = None, run_id: Optional[str] = None,
                               unresolved_only: bool = False, limit: int = 50) -> List[SyncError]:
        """Errors ordered newest first"""

    # Audit history

    @abstractmethod
    async def append_history(self, run_id: Optional[str], provider_id: str, record_id: str,
                             mls_id: str, action: str):
        ...

    @abstractmethod
    async def list_history(self, run_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        ...

    # Duplicate candidates

    @abstractmethod
    async def save_duplicate_candidate(self, candidate: DuplicateCandidate) -> bool:
        """Persist a candidate; returns False when the pair is already known"""

    @abstractmethod
    async def get_duplicate_candidate(self, candidate_id: str) -> Optional[DuplicateCandidate]:
        ...

    @abstractmethod
    async def mark_duplicate_resolved(self, candidate_id: str, action: ResolvedAction) -> bool:
        """Mark a candidate resolved; returns False if it was already resolved"""

    @abstractmethod
    async def list_pending_duplicates(self, limit: int = 50) -> List[DuplicateCandidate]:
        """Unresolved candidates ordered by confidence descending"""


class InMemoryPropertyStore(PropertyStore):
    """Dictionary-backed store; everything returned is a copy"""

    def __init__(self):
        self.properties: Dict[str, CanonicalPropertyRecord] = {}
        self.property_meta: Dict[str, Dict[str, Any]] = {}
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, SyncError] = {}
        self.history: List[Dict[str, Any]] = []
        self.candidates: Dict[str, DuplicateCandidate] = {}
        self._sequence = 0

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    async def get_property(self, record_id: str) -> Optional[CanonicalPropertyRecord]:
        record = self.properties.get(record_id)
        return copy.deepcopy(record) if record else None

    async def upsert_property(self, record: CanonicalPropertyRecord) -> str:
        record_id = record.record_id
        action = UPDATED if record_id in self.properties else CREATED
        self.properties[record_id] = copy.deepcopy(record)

        meta = self.property_meta.setdefault(record_id, {'created_at': utcnow(), 'merged_into': None})
        meta['last_synced_at'] = utcnow()
        meta['sequence'] = self._next_sequence()
        return action

    async def list_recent_properties(self, provider_id: Optional[str] = None,
                                     limit: int = 500) -> List[CanonicalPropertyRecord]:
        rows = [
            (self.property_meta[record_id]['sequence'], record)
            for record_id, record in self.properties.items()
            if not self.property_meta[record_id].get('merged_into')
            and (provider_id is None or record.provider_id == provider_id)
        ]
        rows.sort(key=lambda row: row[0], reverse=True)
        return [copy.deepcopy(record) for _, record in rows[:limit]]

    async def mark_property_merged(self, record_id: str, merged_into: str) -> bool:
        meta = self.property_meta.get(record_id)
        if meta is None:
            return False
        meta['merged_into'] = merged_into
        return True

    async def save_sync_run(self, snapshot: SyncRunSnapshot):
        row = run_row(snapshot)
        row['sequence'] = self.runs.get(snapshot.id, {}).get('sequence') or self._next_sequence()
        self.runs[snapshot.id] = row

    async def get_sync_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        row = self.runs.get(run_id)
        return dict(row) if row else None

    async def list_sync_runs(self, provider_id: Optional[str] = None, status: Optional[str] = None,
                             since: Optional[datetime] = None, limit: int = 50) -> List[Dict[str, Any]]:
        rows = []
        for row in self.runs.values():
            if provider_id and row['provider_id'] != provider_id:
                continue
            if status and row['status'] != status:
                continue
            if since:
                started = parse_datetime(row.get('started_at'))
                if started is None or started < since:
                    continue
            rows.append(row)
        rows.sort(key=lambda r: r['sequence'], reverse=True)
        return [dict(r) for r in rows[:limit]]

    async def append_sync_error(self, error: SyncError):
        self.errors[error.id] = copy.deepcopy(error)

    async def update_sync_error(self, error: SyncError):
        self.errors[error.id] = copy.deepcopy(error)

    async def get_sync_error(self, error_id: str) -> Optional[SyncError]:
        error = self.errors.get(error_id)
        return copy.deepcopy(error) if error else None

    async def list_sync_errors(self, provider_id: Optional[str] = None, run_id: Optional[str] = None,
                               unresolved_only: bool = False, limit: int = 50) -> List[SyncError]:
        # dict preserves append order, newest are last
        matches = [
            e for e in reversed(list(self.errors.values()))
            if (provider_id is None or e.provider_id == provider_id)
            and (run_id is None or e.run_id == run_id)
            and not (unresolved_only and e.resolved)
        ]
        return [copy.deepcopy(e) for e in matches[:limit]]

    async def append_history(self, run_id: Optional[str], provider_id: str, record_id: str,
                             mls_id: str, action: str):
        self.history.append({
            'run_id': run_id,
            'provider_id': provider_id,
            'record_id': record_id,
            'mls_id': mls_id,
            'action': action,
            'created_at': utcnow().isoformat(),
        })

    async def list_history(self, run_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        rows = [row for row in reversed(self.history) if run_id is None or row['run_id'] == run_id]
        return [dict(row) for row in rows[:limit]]

    async def save_duplicate_candidate(self, candidate: DuplicateCandidate) -> bool:
        if candidate.id in self.candidates:
            return False
        self.candidates[candidate.id] = copy.deepcopy(candidate)
        return True

    async def get_duplicate_candidate(self, candidate_id: str) -> Optional[DuplicateCandidate]:
        candidate = self.candidates.get(candidate_id)
        return copy.deepcopy(candidate) if candidate else None

    async def mark_duplicate_resolved(self, candidate_id: str, action: ResolvedAction) -> bool:
        candidate = self.candidates.get(candidate_id)
        if candidate is None or candidate.resolved:
            return False
        candidate.resolved = True
        candidate.resolved_action = action
        candidate.resolved_at = utcnow()
        return True

    async def list_pending_duplicates(self, limit: int = 50) -> List[DuplicateCandidate]:
        pending = [c for c in self.candidates.values() if not c.resolved]
        pending.sort(key=lambda c: c.confidence, reverse=True)
        return [copy.deepcopy(c) for c in pending[:limit]]


class SupabasePropertyStore(PropertyStore):
    """Store backed by the mls_* tables in Supabase"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    async def _execute(self, query):
        """Run a query chain off the event loop; the Supabase client is synchronous"""
        return await asyncio.to_thread(query.execute)

    # Properties

    async def get_property(self, record_id: str) -> Optional[CanonicalPropertyRecord]:
        response = await self._execute(
            self.supabase.table('mls_properties').select('data').eq('record_id', record_id))
        if not response.data:
            return None
        return CanonicalPropertyRecord.from_dict(response.data[0]['data'])

    async def upsert_property(self, record: CanonicalPropertyRecord) -> str:
        record_id = record.record_id
        try:
            existing = await self._execute(self.supabase.table('mls_properties').select('record_id').eq(
                'record_id', record_id
            ))
            action = UPDATED if existing.data else CREATED

            now = utcnow().isoformat()
            row = {
                'record_id': record_id,
                'provider_id': record.provider_id,
                'mls_id': record.normalized_mls_id,
                'property_type': record.property_type,
                'status': record.status,
                'price': record.price,
                'city': record.address.city,
                'state': record.address.state,
                'zip_code': record.address.zip_code,
                'data': record.to_dict(),
                'listing_updated_at': record.dates.updated.isoformat(),
                'last_synced_at': now,
            }
            if action == CREATED:
                row['created_at'] = now

            await self._execute(
                self.supabase.table('mls_properties').upsert(row, on_conflict='record_id'))
            return action

        except Exception as e:
            logger.error(f"Error upserting property {record_id}: {str(e)}")
            raise

    async def list_recent_properties(self, provider_id: Optional[str] = None,
                                     limit: int = 500) -> List[CanonicalPropertyRecord]:
        query = self.supabase.table('mls_properties').select('data').is_('merged_into', 'null')
        if provider_id:
            query = query.eq('provider_id', provider_id)
        response = await self._execute(query.order('last_synced_at', desc=True).limit(limit))
        return [CanonicalPropertyRecord.from_dict(row['data']) for row in response.data or []]

    async def mark_property_merged(self, record_id: str, merged_into: str) -> bool:
        try:
            response = await self._execute(self.supabase.table('mls_properties').update({
                'merged_into': merged_into,
                'last_synced_at': utcnow().isoformat(),
            }).eq('record_id', record_id))
            return bool(response.data)
        except Exception as e:
            logger.error(f"Error marking property {record_id} merged: {str(e)}")
            raise

    # Runs

    async def save_sync_run(self, snapshot: SyncRunSnapshot):
        try:
            await self._execute(
                self.supabase.table('mls_sync_runs').upsert(run_row(snapshot), on_conflict='id'))
        except Exception as e:
            logger.error(f"Error saving sync run {snapshot.id}: {str(e)}")
            raise

    async def get_sync_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        response = await self._execute(self.supabase.table('mls_sync_runs').select('*').eq('id', run_id))
        return response.data[0] if response.data else None

    async def list_sync_runs(self, provider_id: Optional[str] = None, status: Optional[str] = None,
                             since: Optional[datetime] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = self.supabase.table('mls_sync_runs').select('*')
        if provider_id:
            query = query.eq('provider_id', provider_id)
        if status:
            query = query.eq('status', status)
        if since:
            query = query.gte('started_at', since.isoformat())
        response = await self._execute(query.order('started_at', desc=True).limit(limit))
        return response.data or []

    # Errors

    async def append_sync_error(self, error: SyncError):
        try:
            await self._execute(self.supabase.table('mls_sync_errors').insert(error.to_dict()))
        except Exception as e:
            logger.error(f"Error logging sync error {error.id}: {str(e)}")
            raise

    async def update_sync_error(self, error: SyncError):
        await self._execute(
            self.supabase.table('mls_sync_errors').update(error.to_dict()).eq('id', error.id))

    async def get_sync_error(self, error_id: str) -> Optional[SyncError]:
        response = await self._execute(self.supabase.table('mls_sync_errors').select('*').eq('id', error_id))
        return SyncError.from_dict(response.data[0]) if response.data else None

    async def list_sync_errors(self, provider_id: Optional[str] = None, run_id: Optional[str] = None,
                               unresolved_only: bool = False, limit: int = 50) -> List[SyncError]:
        query = self.supabase.table('mls_sync_errors').select('*')
        if provider_id:
            query = query.eq('provider_id', provider_id)
        if run_id:
            query = query.eq('run_id', run_id)
        if unresolved_only:
            query = query.eq('resolved', False)
        response = await self._execute(query.order('timestamp', desc=True).limit(limit))
        return [SyncError.from_dict(row) for row in response.data or []]

    # Audit history

    async def append_history(self, run_id: Optional[str], provider_id: str, record_id: str,
                             mls_id: str, action: str):
        await self._execute(self.supabase.table('mls_sync_history').insert({
            'run_id': run_id,
            'provider_id': provider_id,
            'record_id': record_id,
            'mls_id': mls_id,
            'action': action,
            'created_at': utcnow().isoformat(),
        }))

    async def list_history(self, run_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = self.supabase.table('mls_sync_history').select('*')
        if run_id:
            query = query.eq('run_id', run_id)
        response = await self._execute(query.order('created_at', desc=True).limit(limit))
        return response.data or []

    # Duplicate candidates

    async def save_duplicate_candidate(self, candidate: DuplicateCandidate) -> bool:
        existing = await self._execute(self.supabase.table('mls_duplicate_candidates').select('id').eq(
            'id', candidate.id
        ))
        if existing.data:
            return False

        await self._execute(self.supabase.table('mls_duplicate_candidates').insert({
            'id': candidate.id,
            'source_record_id': candidate.source_record.record_id,
            'target_record_id': candidate.target_record.record_id,
            'confidence': candidate.confidence,
            'suggested_action': candidate.suggested_action.value,
            'match_reasons': list(candidate.match_reasons),
            'payload': candidate.to_dict(),
            'resolved': False,
            'created_at': candidate.created_at.isoformat(),
        }))
        return True

    async def get_duplicate_candidate(self, candidate_id: str) -> Optional[DuplicateCandidate]:
        response = await self._execute(
            self.supabase.table('mls_duplicate_candidates').select('*').eq('id', candidate_id))
        if not response.data:
            return None
        return self._candidate_from_row(response.data[0])

    async def mark_duplicate_resolved(self, candidate_id: str, action: ResolvedAction) -> bool:
        # Filtering on resolved=false makes the update a no-op for resolved rows
        response = await self._execute(self.supabase.table('mls_duplicate_candidates').update({
            'resolved': True,
            'resolved_action': action.value,
            'resolved_at': utcnow().isoformat(),
        }).eq('id', candidate_id).eq('resolved', False))
        return bool(response.data)

    async def list_pending_duplicates(self, limit: int = 50) -> List[DuplicateCandidate]:
        response = await self._execute(self.supabase.table('mls_duplicate_candidates').select('*').eq(
            'resolved', False
        ).order('confidence', desc=True).limit(limit))
        return [self._candidate_from_row(row) for row in response.data or []]

    @staticmethod
    def _candidate_from_row(row: Dict[str, Any]) -> DuplicateCandidate:
        payload = dict(row['payload'])
        payload['resolved'] = row.get('resolved', False)
        payload['resolved_action'] = row.get('resolved_action')
        payload['resolved_at'] = row.get('resolved_at')
        return DuplicateCandidate.from_dict(payload)
