# keyshop/services/catalog_sync_service.py
"""
Reseller catalog sync.

Pulls the G2A catalog (explicit product ids or whole categories), diffs it
against the locally known reseller-backed games and upserts only what
changed. A full sync also soft-removes vanished products by marking them
out of stock; rows are never deleted.

At most one sync runs system-wide: entry is guarded by a TTL lock in the
cache store, and a second caller fails immediately with
``SyncInProgressError`` instead of queueing.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from keyshop.config import Config
from keyshop.errors import SyncInProgressError
from keyshop.g2a.client import G2AClient
from keyshop.g2a.errors import G2AError
from keyshop.g2a.payloads import ResellerProduct
from keyshop.g2a.retry import RetryPolicy
from keyshop.models import (
    Category,
    Game,
    GameCategory,
    GameGenre,
    GamePlatform,
    Genre,
    Platform,
    as_utc,
)
from keyshop.normalization import generate_slug, to_money
from keyshop.observability import increment_counter, record_event, set_gauge
from keyshop.services.cache_service import (
    CacheLock,
    CacheStore,
    CacheUnavailableError,
    invalidate_prefixes,
)

logger = logging.getLogger(__name__)

SYNC_LOCK_KEY = "g2a:sync:lock"
SYNC_PROGRESS_KEY = "g2a:sync:progress"
CACHE_PREFIXES_AFTER_SYNC = ("home:", "game:", "catalog:")
PROGRESS_EVERY = 10
# Rough per-page estimate used for the progress ETA
SECONDS_PER_PAGE_ESTIMATE = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncResult:
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    categories_created: int = 0
    genres_created: int = 0
    platforms_created: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def add_error(self, product_id: str, message: str) -> None:
        self.errors.append({"product_id": product_id, "error": message})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncProgress:
    in_progress: bool = False
    current_page: int = 0
    total_pages: int = 0
    products_processed: int = 0
    products_total: int = 0
    categories_created: int = 0
    genres_created: int = 0
    platforms_created: int = 0
    errors: int = 0
    started_at: Optional[str] = None
    estimated_completion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncProgress":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


class SyncProgressTracker:
    """Keeps the current run's progress in the cache so any worker can report it."""

    def __init__(self, cache: CacheStore, key: str = SYNC_PROGRESS_KEY, ttl: Optional[int] = None) -> None:
        self.cache = cache
        self.key = key
        self.ttl = ttl or Config.SYNC_PROGRESS_TTL_SECONDS
        self.state = SyncProgress()

    def _write(self) -> None:
        try:
            self.cache.set(self.key, json.dumps(self.state.to_dict()), self.ttl)
        except CacheUnavailableError as exc:
            increment_counter("cache_errors_total", labels={"operation": "sync_progress"})
            logger.warning(f"Failed to store sync progress: {exc}")

    def start(self, now: datetime) -> None:
        self.state = SyncProgress(in_progress=True, started_at=now.isoformat())
        self._write()

    def update(self, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self.state, name, value)
        self._write()

    def clear(self) -> None:
        self.state = SyncProgress()
        try:
            self.cache.delete(self.key)
        except CacheUnavailableError as exc:
            increment_counter("cache_errors_total", labels={"operation": "sync_progress"})
            logger.warning(f"Failed to clear sync progress: {exc}")

    def read(self) -> SyncProgress:
        try:
            raw = self.cache.get(self.key)
        except CacheUnavailableError as exc:
            logger.warning(f"Failed to read sync progress: {exc}")
            return self.state
        if not raw:
            return SyncProgress()
        try:
            return SyncProgress.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return SyncProgress()


def has_game_data_changed(game: Game, game_fields: Dict[str, Any]) -> bool:
    """Compare the fields a sync may change; identical data is never rewritten."""
    if to_money(game.price) != to_money(game_fields["price"]):
        return True
    current_original = to_money(game.original_price) if game.original_price is not None else None
    incoming_original = game_fields.get("original_price")
    if incoming_original is not None:
        incoming_original = to_money(incoming_original)
    if current_original != incoming_original:
        return True
    if bool(game.in_stock) != bool(game_fields["in_stock"]):
        return True
    if bool(game.g2a_stock) != bool(game_fields["g2a_stock"]):
        return True
    if (game.description or "") != (game_fields.get("description") or ""):
        return True
    return list(game.images or []) != list(game_fields.get("images") or [])


class CatalogSyncService:
    def __init__(
        self,
        db_session: Session,
        client: G2AClient,
        cache: CacheStore,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: Optional[int] = None,
        page_size: Optional[int] = None,
        request_delay: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
        skip_removals_on_incomplete: Optional[bool] = None,
    ) -> None:
        self.db = db_session
        self.client = client
        self.cache = cache
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=Config.G2A_RETRY_MAX + 1,
            base_delay=1.0,
            sleep=sleep,
        )
        self.batch_size = batch_size or Config.SYNC_BATCH_SIZE
        self.page_size = page_size or Config.SYNC_PAGE_SIZE
        self.request_delay = (
            Config.SYNC_REQUEST_DELAY_MS / 1000.0 if request_delay is None else request_delay
        )
        self._clock = clock
        self.skip_removals_on_incomplete = (
            Config.SYNC_SKIP_REMOVALS_ON_INCOMPLETE
            if skip_removals_on_incomplete is None
            else skip_removals_on_incomplete
        )
        self.progress = SyncProgressTracker(cache)

    def _lock(self) -> CacheLock:
        return CacheLock(self.cache, SYNC_LOCK_KEY, Config.SYNC_LOCK_TTL_SECONDS)

    def _pause(self) -> None:
        if self.request_delay > 0:
            self._sleep(self.request_delay)

    # ==========================================
    # SYNC ENTRY POINT
    # ==========================================

    def sync_catalog(
        self,
        full_sync: bool = False,
        product_ids: Optional[Iterable[str]] = None,
        categories: Optional[Iterable[str]] = None,
        include_relationships: bool = False,
    ) -> SyncResult:
        product_ids = [str(pid) for pid in (product_ids or []) if pid]
        categories = [c for c in (categories or []) if c] or [Config.SYNC_DEFAULT_CATEGORY]

        with self._lock().hold():
            started = time.monotonic()
            self.progress.start(self._clock())
            self.logger.info(
                f"Starting catalog sync (full_sync={full_sync}, product_ids={len(product_ids)}, "
                f"categories={categories}, include_relationships={include_relationships})"
            )
            try:
                result = self._run(full_sync, product_ids, categories, include_relationships)
            except Exception:
                self.db.rollback()
                increment_counter("catalog_sync_runs_total", labels={"outcome": "failed"})
                self.logger.exception("Catalog sync failed")
                raise
            finally:
                self.progress.clear()

        duration = time.monotonic() - started
        increment_counter("catalog_sync_runs_total", labels={"outcome": "success"})
        for action in ("added", "updated", "removed", "unchanged"):
            increment_counter(
                "catalog_sync_products_total",
                amount=getattr(result, action),
                labels={"action": action},
            )
        set_gauge("catalog_sync_last_duration_seconds", duration)
        record_event(
            "catalog_sync_completed",
            {
                "added": result.added,
                "updated": result.updated,
                "removed": result.removed,
                "unchanged": result.unchanged,
                "errors": len(result.errors),
                "duration_seconds": round(duration, 3),
            },
        )
        self.logger.info(
            f"Catalog sync completed: {result.added} added, {result.updated} updated, "
            f"{result.removed} removed, {result.unchanged} unchanged, {len(result.errors)} errors"
        )
        return result

    def _run(
        self,
        full_sync: bool,
        product_ids: List[str],
        categories: List[str],
        include_relationships: bool,
    ) -> SyncResult:
        result = SyncResult()

        if product_ids:
            products = self._fetch_by_ids(product_ids, result)
            fetch_complete = False
        else:
            products, fetch_complete = self._fetch_categories(categories, result)

        products = self._dedupe(products)
        self.progress.update(products_total=len(products), products_processed=0)
        self.logger.info(f"Fetched {len(products)} products from G2A")

        existing = {
            game.g2a_product_id: game
            for game in self.db.query(Game).filter(Game.g2a_product_id.isnot(None)).all()
        }

        now = self._clock()
        processed = 0
        for start in range(0, len(products), self.batch_size):
            batch = products[start:start + self.batch_size]
            for product in batch:
                self._process_product(product, existing, now, full_sync, include_relationships, result)
                processed += 1
                if processed % PROGRESS_EVERY == 0:
                    self.progress.update(
                        products_processed=processed,
                        categories_created=result.categories_created,
                        genres_created=result.genres_created,
                        platforms_created=result.platforms_created,
                        errors=len(result.errors),
                    )
            self.db.commit()

        if full_sync:
            self._reconcile_removals(existing, products, fetch_complete, now, result)

        removed_keys = invalidate_prefixes(self.cache, CACHE_PREFIXES_AFTER_SYNC)
        self.logger.info(f"Invalidated {removed_keys} cached catalog entries after sync")
        return result

    # ==========================================
    # FETCHING
    # ==========================================

    def _fetch_by_ids(self, product_ids: List[str], result: SyncResult) -> List[ResellerProduct]:
        products: List[ResellerProduct] = []
        for index, product_id in enumerate(product_ids):
            if index:
                self._pause()
            try:
                products.append(
                    self.retry_policy.call(
                        lambda pid=product_id: self.client.get_product_info(pid),
                        operation="get_product_info",
                    )
                )
            except G2AError as exc:
                result.add_error(product_id, exc.message)
                self.logger.error(f"Error fetching product {product_id}: {exc.message}")
        return products

    def _fetch_categories(
        self, categories: List[str], result: SyncResult
    ) -> Tuple[List[ResellerProduct], bool]:
        products: List[ResellerProduct] = []
        complete = True

        for position, category in enumerate(categories):
            if position:
                self._pause()
            try:
                first = self._fetch_page(1, category)
            except G2AError as exc:
                complete = False
                result.add_error(f"category-{category}-page-1", exc.message)
                self.logger.error(f"Error fetching first page of category {category}: {exc.message}")
                continue

            products.extend(first.products)
            complete = complete and not first.is_mock
            last_page = first.last_page
            eta = self._clock() + timedelta(seconds=last_page * SECONDS_PER_PAGE_ESTIMATE)
            self.progress.update(
                current_page=1,
                total_pages=last_page,
                products_total=first.total,
                estimated_completion=eta.isoformat(),
            )

            for page_number in range(2, last_page + 1):
                self._pause()
                try:
                    page = self._fetch_page(page_number, category)
                except G2AError as exc:
                    complete = False
                    result.add_error(f"category-{category}-page-{page_number}", exc.message)
                    self.logger.error(
                        f"Error fetching page {page_number} of category {category} after retries: {exc.message}"
                    )
                    continue
                products.extend(page.products)
                complete = complete and not page.is_mock
                self.progress.update(current_page=page_number, products_processed=len(products))

        return products, complete

    def _fetch_page(self, page: int, category: str):
        return self.retry_policy.call(
            lambda: self.client.fetch_products(page, self.page_size, category),
            operation="fetch_products",
        )

    @staticmethod
    def _dedupe(products: List[ResellerProduct]) -> List[ResellerProduct]:
        seen = set()
        unique = []
        for product in products:
            if product.id in seen:
                continue
            seen.add(product.id)
            unique.append(product)
        return unique

    # ==========================================
    # UPSERT
    # ==========================================

    def _process_product(
        self,
        product: ResellerProduct,
        existing: Dict[str, Game],
        now: datetime,
        full_sync: bool,
        include_relationships: bool,
        result: SyncResult,
    ) -> None:
        game_fields = product.to_game_fields(now)
        game = existing.get(product.id)
        if game is not None and not full_sync and not has_game_data_changed(game, game_fields):
            result.unchanged += 1
            return

        created: Dict[str, int] = {}
        try:
            with self.db.begin_nested():
                if game is not None:
                    self._update_game(game, game_fields)
                    action = "updated"
                else:
                    game = self._insert_game(game_fields)
                    action = "added"
                if include_relationships:
                    created = self.link_game_relationships(
                        game, product.categories, product.genres, product.platforms
                    )
        except Exception as exc:
            result.add_error(product.id, str(exc))
            self.logger.error(f"Error processing product {product.id}: {exc}")
            return

        if action == "added":
            existing[product.id] = game
            result.added += 1
        else:
            result.updated += 1
        result.categories_created += created.get("categories", 0)
        result.genres_created += created.get("genres", 0)
        result.platforms_created += created.get("platforms", 0)

    def _update_game(self, game: Game, game_fields: Dict[str, Any]) -> None:
        # Slugs stay stable once published
        for name, value in game_fields.items():
            if name == "slug":
                continue
            setattr(game, name, value)
        self.db.flush()

    def _unique_slug(self, slug: str, product_id: str) -> str:
        slug = slug or generate_slug(product_id) or "game"
        taken = self.db.query(Game.gameID).filter(Game.slug == slug).first()
        if taken is None:
            return slug
        return f"{slug}-{generate_slug(product_id)}"[:120]

    def _insert_game(self, game_fields: Dict[str, Any]) -> Game:
        values = dict(game_fields)
        values["slug"] = self._unique_slug(values["slug"], values["g2a_product_id"])
        game = Game(**values)
        self.db.add(game)
        self.db.flush()
        return game

    def _find_or_create(self, model, name: str) -> Tuple[Any, bool]:
        slug = generate_slug(name)
        entity = self.db.query(model).filter_by(slug=slug).first()
        if entity is not None:
            return entity, False
        entity = model(name=name, slug=slug)
        self.db.add(entity)
        self.db.flush()
        self.logger.debug(f"Created {model.__name__.lower()}: {name}")
        return entity, True

    def link_game_relationships(
        self,
        game: Game,
        categories: Iterable[str],
        genres: Iterable[str],
        platforms: Iterable[str],
    ) -> Dict[str, int]:
        """
        Find-or-create each taxonomy entry and link it to the game, skipping
        links that already exist. Returns how many taxonomy entries were
        newly created, per kind.
        """
        created = {"categories": 0, "genres": 0, "platforms": 0}
        plan = (
            ("categories", categories, Category, GameCategory, "categoryID"),
            ("genres", genres, Genre, GameGenre, "genreID"),
            ("platforms", platforms, Platform, GamePlatform, "platformID"),
        )
        for kind, names, model, link_model, fk_name in plan:
            for name in names or []:
                if not name or not generate_slug(name):
                    continue
                entity, was_created = self._find_or_create(model, name)
                if was_created:
                    created[kind] += 1
                entity_id = getattr(entity, fk_name)
                linked = (
                    self.db.query(link_model)
                    .filter_by(gameID=game.gameID, **{fk_name: entity_id})
                    .first()
                )
                if linked is None:
                    self.db.add(link_model(gameID=game.gameID, **{fk_name: entity_id}))
                    self.db.flush()
        return created

    def _reconcile_removals(
        self,
        existing: Dict[str, Game],
        products: List[ResellerProduct],
        fetch_complete: bool,
        now: datetime,
        result: SyncResult,
    ) -> None:
        if not fetch_complete:
            if self.skip_removals_on_incomplete:
                self.logger.warning(
                    "Skipping removal reconciliation: the fetched catalog is incomplete or not live"
                )
                return
            self.logger.warning(
                "Full sync fetched a partial catalog; products missing from it are marked out of stock",
                extra={"context": {"fetched": len(products), "errors": len(result.errors)}},
            )
        fetched_ids = {product.id for product in products}
        result.removed = self._mark_vanished(existing, fetched_ids, now)
        self.db.commit()

    def _mark_vanished(self, existing: Dict[str, Game], fetched_ids: set, now: datetime) -> int:
        removed = 0
        for g2a_id, game in existing.items():
            if g2a_id in fetched_ids:
                continue
            if not game.in_stock and not game.g2a_stock:
                continue
            game.in_stock = False
            game.g2a_stock = False
            game.g2a_last_sync = now
            removed += 1
        return removed

    # ==========================================
    # STATUS
    # ==========================================

    def get_sync_progress(self) -> Dict[str, Any]:
        return self.progress.read().to_dict()

    def get_sync_status(self) -> Dict[str, Any]:
        reseller_games = self.db.query(Game).filter(Game.g2a_product_id.isnot(None))
        last_sync = (
            self.db.query(func.max(Game.g2a_last_sync))
            .filter(Game.g2a_product_id.isnot(None))
            .scalar()
        )
        total = reseller_games.count()
        in_stock = reseller_games.filter(Game.in_stock.is_(True)).count()
        in_progress = self._lock().is_held() or self.progress.read().in_progress
        last_sync = as_utc(last_sync)
        return {
            "last_sync": last_sync.isoformat() if last_sync else None,
            "total_products": total,
            "in_stock": in_stock,
            "out_of_stock": total - in_stock,
            "sync_in_progress": in_progress,
        }


class CatalogSyncScheduler:
    """
    Periodic catalog sync on a daemon thread.

    Each run opens its own DB session; a run that finds another sync in
    progress is skipped.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[], G2AClient],
        cache_factory: Callable[[], CacheStore],
        interval: Optional[int] = None,
        full_sync: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.cache_factory = cache_factory
        self.interval = interval if interval is not None else Config.SYNC_SCHEDULE_INTERVAL_SECONDS
        self.full_sync = full_sync
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("Catalog sync scheduler is already running")
            return
        if self.interval <= 0:
            logger.info("Catalog sync scheduler disabled (interval <= 0)")
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="catalog-sync", daemon=True)
        self._thread.start()
        logger.info(f"Started catalog sync scheduler (interval: {self.interval}s)")

    def stop(self) -> None:
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Stopped catalog sync scheduler")

    def run_once(self) -> Optional[SyncResult]:
        session = self.session_factory()
        try:
            service = CatalogSyncService(session, self.client_factory(), self.cache_factory())
            return service.sync_catalog(full_sync=self.full_sync)
        except SyncInProgressError:
            logger.info("Scheduled catalog sync skipped: another sync is in progress")
            return None
        except Exception as e:
            logger.error(f"Scheduled catalog sync failed: {e}")
            return None
        finally:
            session.close()

    def _loop(self) -> None:
        while self._running:
            self.run_once()
            # Sleep in small increments to allow for quick shutdown
            for _ in range(self.interval):
                if not self._running:
                    break
                time.sleep(1)
