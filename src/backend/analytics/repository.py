from __future__ import annotations

import json
import logging
from collections import defaultdict
from functools import lru_cache
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine, Row

from quit_hero_api.configuration import BackofficeConfig
from quit_hero_api.filters import RecordCriteria
from quit_hero_api.pocketbase import AuthStore, ClientResponseError, PocketBaseClient

from .models import CollectionRecord, records_from_items

logger = logging.getLogger(__name__)

RecordsByCollection = Dict[str, Sequence[CollectionRecord]]


class RecordRepository:
    """
    Interface for loading backoffice collections.

    ``load`` returns every record of the requested collections for the
    aggregates. ``list`` and ``page`` apply ``RecordCriteria`` and must
    agree across backends.
    """

    def load(
        self,
        collections: Sequence[str],
        expand: Optional[Mapping[str, str]] = None,
    ) -> RecordsByCollection:
        raise NotImplementedError

    def list(
        self,
        collection: str,
        criteria: Optional[RecordCriteria] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
    ) -> Sequence[CollectionRecord]:
        raise NotImplementedError

    def page(
        self,
        collection: str,
        page: int,
        per_page: int,
        criteria: Optional[RecordCriteria] = None,
        sort: Optional[str] = None,
    ) -> Sequence[CollectionRecord]:
        raise NotImplementedError


class PocketBaseRecordRepository(RecordRepository):
    """Fetch collections live through the PocketBase REST API."""

    def __init__(self, client: PocketBaseClient):
        self.client = client

    def load(
        self,
        collections: Sequence[str],
        expand: Optional[Mapping[str, str]] = None,
    ) -> RecordsByCollection:
        expand = expand or {}
        return {name: self.list(name, expand=expand.get(name)) for name in collections}

    def list(
        self,
        collection: str,
        criteria: Optional[RecordCriteria] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
    ) -> Sequence[CollectionRecord]:
        try:
            items = self.client.collection(collection).get_full_list(
                filter=criteria.to_filter() if criteria else None,
                sort=sort,
                expand=expand,
            )
        except ClientResponseError as exc:
            if exc.status == 404:
                logger.warning("Collection %s is not available: %s", collection, exc)
                return ()
            raise
        return tuple(records_from_items(collection, items))

    def page(
        self,
        collection: str,
        page: int,
        per_page: int,
        criteria: Optional[RecordCriteria] = None,
        sort: Optional[str] = None,
    ) -> Sequence[CollectionRecord]:
        result = self.client.collection(collection).get_list(
            page=page,
            per_page=per_page,
            filter=criteria.to_filter() if criteria else None,
            sort=sort,
        )
        return tuple(records_from_items(collection, result.items))


class SQLRecordRepository(RecordRepository):
    """
    Read collections from a SQL snapshot of PocketBase.

    Expected table:
      - records(collection, id, created, updated, data_json)

    ``data_json`` holds the full record item (including ``expand`` when the
    export captured it). ``list`` and ``page`` evaluate criteria with
    ``RecordCriteria.matches`` and honour a single-field PocketBase ``sort``
    such as ``-created``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def load(
        self,
        collections: Sequence[str],
        expand: Optional[Mapping[str, str]] = None,
    ) -> RecordsByCollection:
        if not collections:
            return {}
        query = text(
            """
            SELECT collection, id, created, updated, data_json
            FROM records
            WHERE collection IN :collections
            ORDER BY created ASC
            """
        ).bindparams(bindparam("collections", expanding=True))
        with self.engine.connect() as connection:
            rows = connection.execute(query, {"collections": list(collections)}).fetchall()

        grouped: Dict[str, List[CollectionRecord]] = defaultdict(list)
        for row in rows:
            grouped[row.collection].append(self._row_to_record(row))
        return {name: tuple(grouped.get(name, [])) for name in collections}

    def list(
        self,
        collection: str,
        criteria: Optional[RecordCriteria] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
    ) -> Sequence[CollectionRecord]:
        records = self.load([collection])[collection]
        if criteria is not None:
            records = tuple(record for record in records if criteria.matches(record))
        if sort:
            name = sort.lstrip("-+")
            records = tuple(
                sorted(records, key=lambda record: _sort_value(record, name), reverse=sort.startswith("-"))
            )
        return records

    def page(
        self,
        collection: str,
        page: int,
        per_page: int,
        criteria: Optional[RecordCriteria] = None,
        sort: Optional[str] = None,
    ) -> Sequence[CollectionRecord]:
        records = self.list(collection, criteria=criteria, sort=sort)
        offset = max(0, page - 1) * per_page
        return records[offset : offset + per_page]

    @staticmethod
    def _row_to_record(row: Row) -> CollectionRecord:
        payload = row.data_json
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {}
        elif payload is None:
            payload = {}
        item = dict(payload)
        item["id"] = str(row.id)
        item.setdefault("created", row.created)
        item.setdefault("updated", row.updated)
        return CollectionRecord.from_item(str(row.collection), item)


def _sort_value(record: CollectionRecord, name: str) -> str:
    if name in ("created", "updated"):
        value = record.datetime_field(name)
        return value.isoformat() if value else ""
    return str(record.get(name, ""))


@lru_cache(maxsize=4)
def _engine(database_url: str) -> Engine:
    return create_engine(database_url)


def build_repository(config: BackofficeConfig, token: Optional[str] = None) -> RecordRepository:
    database_url = config.dashboard.database_url
    if database_url:
        return SQLRecordRepository(_engine(database_url))
    client = PocketBaseClient(
        config.pocketbase.url,
        timeout=config.pocketbase.request_timeout_seconds,
        auth_store=AuthStore(token=token or ""),
    )
    return PocketBaseRecordRepository(client)
