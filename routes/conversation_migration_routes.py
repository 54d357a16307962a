# -*- coding: utf-8 -*-
"""
Conversation Migration API Routes (admin)
- Preview / run duplicate conversation merges
- Merge an operator-selected group of conversations
- Duplicate statistics
- Phone identity normalization backfill
"""
import asyncio
import traceback
from typing import List, Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

import config
from services.conversation_migration_service import conversation_migration_service
from services.crm_contracts import MigrationOptions, channels_from_values
from services.migration_errors import MigrationInProgressError

router = APIRouter(prefix="/api/admin/crm/conversation-migration")


# Pydantic models for migration requests (camelCase on the wire)
class MigrationRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dry_run: bool = Field(default=True, alias="dryRun")
    limit: int = config.MIGRATION_DEFAULT_LIMIT
    delete_duplicates: bool = Field(default=True, alias="deleteDuplicates")
    collections: Optional[List[str]] = None
    channels: Optional[List[str]] = None
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")


class MergeGroupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ids: List[str]
    primary_id: Optional[str] = Field(default=None, alias="primaryId")
    delete_duplicates: bool = Field(default=True, alias="deleteDuplicates")
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")


class PhoneNormalizationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dry_run: bool = Field(default=True, alias="dryRun")
    limit: int = config.MIGRATION_DEFAULT_LIMIT
    collections: Optional[List[str]] = None
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _report_response(report) -> JSONResponse:
    """Aborted runs answer 500 but still carry the partial report."""
    return JSONResponse(status_code=500 if report.aborted else 200, content=report.to_dict())


def _handle_exception(operation: str, e: Exception) -> JSONResponse:
    if isinstance(e, MigrationInProgressError):
        print(f"⚠️ {operation} rejected: {e}")
        return _error(409, str(e))
    if isinstance(e, ValueError):
        print(f"⚠️ Invalid {operation} request: {e}")
        return _error(400, str(e))
    print(f"❌ Error in {operation}: {e}")
    traceback.print_exc()
    return _error(500, str(e))


@router.get("")
async def get_conversation_migration(
    action: str = Query("preview"),
    limit: int = Query(config.MIGRATION_DEFAULT_LIMIT),
    channels: Optional[str] = Query(None),
):
    """Preview duplicate merges (forced dry run) or get duplicate statistics"""
    try:
        if action == "preview":
            options = MigrationOptions(
                dry_run=True,
                limit=limit,
                channels=channels_from_values(_split_csv(channels)),
            )
            print(f"🔍 Conversation merge preview requested (limit={limit})")
            report = await asyncio.to_thread(conversation_migration_service.preview, options)
            return _report_response(report)
        if action == "stats":
            if limit < 1 or limit > config.MIGRATION_MAX_LIMIT:
                raise ValueError(f"limit must be between 1 and {config.MIGRATION_MAX_LIMIT}")
            stats = await asyncio.to_thread(
                conversation_migration_service.get_stats,
                limit,
                channels_from_values(_split_csv(channels)),
            )
            return stats
        raise ValueError(f"Unknown action '{action}' (expected 'preview' or 'stats')")
    except Exception as e:
        return _handle_exception("get_conversation_migration", e)


@router.post("")
async def run_conversation_migration(request: MigrationRunRequest):
    """Run (or simulate) the duplicate conversation merge"""
    try:
        options = MigrationOptions(
            dry_run=request.dry_run,
            limit=request.limit,
            delete_duplicates=request.delete_duplicates,
            channels=channels_from_values(request.channels),
            collections=request.collections or [config.FIRESTORE_CONVERSATIONS_COLLECTION],
            requested_by=request.requested_by,
        )
        mode = "DRY-RUN" if options.dry_run else "LIVE"
        print(f"🔀 Conversation merge {mode} requested by {options.requested_by or 'unknown'} (limit={options.limit})")
        report = await asyncio.to_thread(conversation_migration_service.run, options)
        print(
            f"✅ Conversation merge {mode} done: found={report.groups_found}, "
            f"merged={report.groups_merged}, failed={report.groups_failed}"
        )
        return _report_response(report)
    except Exception as e:
        return _handle_exception("run_conversation_migration", e)


@router.post("/merge-group")
async def merge_conversation_group(request: MergeGroupRequest):
    """Merge an operator-selected set of conversations into one"""
    try:
        print(f"🔀 Manual merge of {len(request.ids)} conversations requested by {request.requested_by or 'unknown'}")
        report = await asyncio.to_thread(
            conversation_migration_service.merge_group,
            request.ids,
            request.primary_id,
            request.delete_duplicates,
            request.requested_by,
        )
        return _report_response(report)
    except Exception as e:
        return _handle_exception("merge_conversation_group", e)


@router.get("/phone-normalization")
async def preview_phone_normalization(limit: int = Query(config.MIGRATION_DEFAULT_LIMIT)):
    """Preview which conversations would get a new normalized identity key"""
    try:
        options = MigrationOptions(dry_run=True, limit=limit)
        report = await asyncio.to_thread(conversation_migration_service.backfill_identity_keys, options)
        return _report_response(report)
    except Exception as e:
        return _handle_exception("preview_phone_normalization", e)


@router.post("/phone-normalization")
async def run_phone_normalization(request: PhoneNormalizationRequest):
    """Write normalized identity keys onto conversations (or simulate it)"""
    try:
        options = MigrationOptions(
            dry_run=request.dry_run,
            limit=request.limit,
            collections=request.collections or [config.FIRESTORE_CONVERSATIONS_COLLECTION],
            requested_by=request.requested_by,
        )
        report = await asyncio.to_thread(conversation_migration_service.backfill_identity_keys, options)
        print(f"✅ Phone normalization {'DRY-RUN' if options.dry_run else 'LIVE'}: updated={report.updated}, failed={report.failed}")
        return _report_response(report)
    except Exception as e:
        return _handle_exception("run_phone_normalization", e)
