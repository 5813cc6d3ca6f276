"""
Query store: cached base queries for consumer reads.

An entry is keyed by the sha256 of (dataset, revision, data options) and
exposed through a short random id. Generation builds one base query per
supported locale, counts its rows and records the column name mapping, so
later reads skip query construction and counting entirely.
"""

from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID
import hashlib
import json
import math
import secrets
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from models.query_store import QueryStoreEntry
from schemas.data_options import DataOptions, SortBy, DEFAULT_DATA_OPTIONS
from schemas.api import DataQueryResponse
from cube.consumer import (
    check_available_views, core_view_chooser, get_columns, get_column_mapping, create_base_query,
    pivot_axes, pivot_query, distinct_values, count_lines
)
from cube.sql import lang_of, quote
from core.config import settings
from core.exceptions import QueryStoreException, QueryStoreNotFound
import logging

logger = logging.getLogger(__name__)

ID_ALPHABET = "1234567890abcdefghjklmnpqrstuvwxy"


def generate_hash(dataset_id, revision_id, options: DataOptions) -> str:
    """Idempotence key of a request; equal options always serialise identically"""
    payload = json.dumps(options.canonical(), sort_keys=True)
    return hashlib.sha256(f"{dataset_id}:{revision_id}:{payload}".encode("utf-8")).hexdigest()


def generate_id(length: int = None) -> str:
    length = length or settings.QUERY_STORE_ID_LENGTH
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


class QueryStore:
    """
    Repository for query store entries.

    At most one entry exists per hash: the insert is ON CONFLICT DO NOTHING
    against the unique hash index and the stored row is always re-read, so
    concurrent generators for the same request converge on one entry.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        cube_engine: AsyncEngine,
        locales: Sequence[str] = None,
        id_attempts: int = None,
        id_length: int = None
    ):
        self.session_maker = session_maker
        self.cube_engine = cube_engine
        self.locales = list(locales or settings.SUPPORTED_LOCALES)
        self.id_attempts = id_attempts or settings.QUERY_STORE_ID_ATTEMPTS
        self.id_length = id_length or settings.QUERY_STORE_ID_LENGTH

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_by_id(self, entry_id: str) -> QueryStoreEntry:
        """
        Raises:
            QueryStoreNotFound: no entry with this id
        """
        logger.debug(f"Loading query store by id {entry_id}...")
        async with self.session_maker() as session:
            result = await session.execute(select(QueryStoreEntry).where(QueryStoreEntry.id == entry_id))
            entry = result.scalar_one_or_none()
        if entry is None:
            raise QueryStoreNotFound("Query store entry not found", context={"id": entry_id})
        return entry

    async def get_by_hash(self, request_hash: str) -> Optional[QueryStoreEntry]:
        logger.debug(f"Loading query store by full hash {request_hash}...")
        async with self.session_maker() as session:
            return await self._select_by_hash(session, request_hash)

    @staticmethod
    async def _select_by_hash(session: AsyncSession, request_hash: str) -> Optional[QueryStoreEntry]:
        result = await session.execute(select(QueryStoreEntry).where(QueryStoreEntry.hash == request_hash))
        return result.scalar_one_or_none()

    async def get_by_request(self, dataset_id: UUID, revision_id: UUID, options: DataOptions = None) -> QueryStoreEntry:
        """Existing entry for this request, or a newly generated one"""
        options = options or DEFAULT_DATA_OPTIONS
        logger.debug(f"Looking for query store entry for dataset {dataset_id}, revision {revision_id}...")
        request_hash = generate_hash(dataset_id, revision_id, options)
        entry = await self.get_by_hash(request_hash)
        if entry is not None:
            return entry
        logger.debug(f"No query store entry found for hash {request_hash}, generating new entry...")
        return await self.generate(dataset_id, revision_id, options)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def allocate_id(self, session: AsyncSession) -> str:
        """
        Short id not used by any entry.

        Raises:
            QueryStoreException: every attempt collided
        """
        for attempt in range(1, self.id_attempts + 1):
            entry_id = generate_id(self.id_length)
            result = await session.execute(select(QueryStoreEntry.id).where(QueryStoreEntry.id == entry_id))
            if result.scalar_one_or_none() is None:
                return entry_id
            logger.warning(f"Collision detected for query store {entry_id} (attempt {attempt}), regenerating...")
        raise QueryStoreException(
            "Failed to generate unique id for query store entry after multiple attempts",
            context={"attempts": self.id_attempts}
        )

    async def build_queries(self, revision_id: UUID, options: DataOptions) -> Tuple[Dict[str, str], int, List[Dict[str, str]]]:
        """
        Base query and line count for every supported locale, plus the column mapping.

        Returns:
            ({locale: sql}, total_lines, column_mapping)
        """
        revision = str(revision_id)
        data_value_type = options.options.data_value_type if options.options else None
        view = check_available_views(data_value_type.value if data_value_type else None)

        queries: Dict[str, str] = {}
        totals: List[int] = []
        try:
            async with self.cube_engine.connect() as conn:
                mapping = await get_column_mapping(conn, revision)
                for locale in self.locales:
                    lang = lang_of(locale)
                    core_view = await core_view_chooser(conn, lang, revision)
                    columns = await get_columns(conn, revision, lang, view)
                    query = create_base_query(revision, core_view, locale, columns, mapping, options)
                    if options.pivot:
                        x, y = pivot_axes(options, locale, mapping)
                        query = pivot_query(query, x, y, await distinct_values(conn, query, x))
                    queries[locale] = query
                    totals.append(await count_lines(conn, query))
        except QueryStoreException:
            raise
        except Exception as e:
            logger.error(f"Failed to run generated base query for revision {revision}: {e}", exc_info=True)
            raise QueryStoreException(
                "Failed to run generated base query",
                context={"revision_id": revision},
                original_exception=e
            )

        total_lines = totals[0]
        if any(total != total_lines for total in totals):
            logger.warning(
                f"Base queries for revision {revision} are producing inconsistent results: "
                f"{dict(zip(self.locales, totals))}"
            )
        return queries, total_lines, mapping

    async def generate(self, dataset_id: UUID, revision_id: UUID, options: DataOptions) -> QueryStoreEntry:
        """Create and persist the entry for a request, or return the one a concurrent caller stored"""
        logger.debug(f"Generating new query store entry for dataset {dataset_id}, revision {revision_id}...")
        request_hash = generate_hash(dataset_id, revision_id, options)

        async with self.session_maker() as session:
            entry_id = await self.allocate_id(session)

        logger.debug(f"Creating base queries for all supported locales for query store {entry_id}...")
        queries, total_lines, mapping = await self.build_queries(revision_id, options)

        async with self.session_maker() as session:
            # ON CONFLICT covers the hash only; a concurrent writer taking the same id raises
            for attempt in range(1, self.id_attempts + 1):
                statement = (
                    pg_insert(QueryStoreEntry)
                    .values(
                        id=entry_id,
                        hash=request_hash,
                        dataset_id=dataset_id,
                        revision_id=revision_id,
                        request_object=options.canonical(),
                        query=queries,
                        total_lines=total_lines,
                        column_mapping=mapping
                    )
                    .on_conflict_do_nothing(index_elements=[QueryStoreEntry.hash])
                )
                try:
                    result = await session.execute(statement)
                    await session.commit()
                    break
                except IntegrityError as e:
                    await session.rollback()
                    logger.warning(f"Query store id {entry_id} was taken concurrently (attempt {attempt}), regenerating...")
                    if attempt == self.id_attempts:
                        raise QueryStoreException(
                            "Failed to store query store entry after repeated id collisions",
                            context={"hash": request_hash, "attempts": self.id_attempts},
                            original_exception=e
                        )
                    entry_id = await self.allocate_id(session)

            if result.rowcount == 0:
                logger.info(f"Query store entry for hash {request_hash} was stored concurrently, reusing it")

            entry = await self._select_by_hash(session, request_hash)

        if entry is None:
            raise QueryStoreException("Query store entry was not persisted", context={"hash": request_hash})
        logger.info(f"Query store entry {entry.id} ready ({entry.total_lines} lines)")
        return entry

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def build_data_query(
        self,
        entry: QueryStoreEntry,
        locale: str = None,
        page_number: int = 1,
        page_size: int = None,
        sort: Sequence[SortBy] = None
    ) -> DataQueryResponse:
        """
        Paged, sorted query over a stored base query.

        Unknown locales fall back to the first supported locale.

        Raises:
            QueryStoreException (400): page out of range
        """
        if locale not in entry.query:
            locale = self.locales[0] if self.locales[0] in entry.query else next(iter(entry.query))
        base_query = entry.query[locale]

        total_lines = entry.total_lines
        page_size = page_size or max(total_lines, 1)
        if page_size < 1:
            raise QueryStoreException("Page size must be positive", context={"page_size": page_size}, status=400)
        total_pages = max(1, math.ceil(total_lines / page_size))
        if page_number < 1 or page_number > total_pages:
            raise QueryStoreException(
                "Page number is out of range",
                context={"page_number": page_number, "total_pages": total_pages},
                status=400
            )

        query = f"SELECT * FROM ({base_query}) AS data"
        if sort:
            query += " ORDER BY " + ", ".join(f"{quote(s.column_name)} {s.direction}" for s in sort)
        query += f" LIMIT {int(page_size)} OFFSET {int(page_size * (page_number - 1))}"

        return DataQueryResponse(
            id=entry.id,
            locale=locale,
            page_number=page_number,
            page_size=page_size,
            total_lines=total_lines,
            total_pages=total_pages,
            query=query
        )
