"""Reconciliation engine for chunked, resumable event import and deletion."""
import logging
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from botocore.exceptions import ClientError

from importer.exceptions import FetchError, PreflightError, RunCanceled
from importer.models import (
    InitMode,
    LastRunRecord,
    Method,
    Phase,
    RunArgs,
    Step,
    TIMESTAMP_FORMAT,
)
from processor.event_processor import EventProcessor
from processor.models import EventRecord, Venue
from remote.events_api import decode_json
from storage.event_repository import EventRepository

logger = logging.getLogger(__name__)


class StatusCancellationToken:
    """
    Cancellation token backed by the progress store.

    A run is canceled once something other than the run itself puts the
    stored status back to free (e.g. free:canceled).
    """

    def __init__(self, store):
        self.store = store

    def is_canceled(self) -> bool:
        return self.store.get_status().is_free


class ReconciliationEngine:
    """
    Drives import and delete operations one chunk per call.

    Every call leaves the progress store holding an exact checkpoint:
    counters advance only after an item's unit of work completes, so
    `processed` is the index of the next item to handle.
    """

    CHUNK_SIZE = 200
    IMPORT_ALL_DATE = '2011-01-01'

    def __init__(
        self,
        store,
        cache,
        api,
        repository: EventRepository,
        processor: Optional[EventProcessor] = None,
        token=None,
        chunk_size: int = CHUNK_SIZE,
        settle_seconds: float = 2,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the engine with its collaborators.

        Args:
            store: ProgressStore
            cache: ResultCache
            api: EventsApiClient
            repository: EventRepository
            processor: EventProcessor (default: new instance)
            token: Cancellation token (default: StatusCancellationToken)
            chunk_size: Items handled per call (default: 200)
            settle_seconds: Delay before releasing the run (default: 2)
            clock: Source of the current time
            sleep: Sleep function used by postflight
        """
        self.store = store
        self.cache = cache
        self.api = api
        self.repository = repository
        self.processor = processor or EventProcessor()
        self.token = token or StatusCancellationToken(store)
        self.chunk_size = chunk_size
        self.settle_seconds = settle_seconds
        self.clock = clock
        self.sleep = sleep
        self._existing_events: Optional[Dict[str, str]] = None

    def now(self) -> str:
        return self.clock().strftime(TIMESTAMP_FORMAT)

    # ==== Pre & post flight ====

    def preflight(self, args: RunArgs, init: InitMode, page: Optional[int] = None) -> None:
        """
        Claim the run and initialize counters.

        `init` values:
            hard   - new top-level action; reset every counter
            soft   - next phase of the same action; keep added/deleted
            resume - continue after a page boundary or cancellation

        Args:
            args: Identity of the running action
            init: Counter initialization mode
            page: Page override for resume (default: previous page)

        Raises:
            PreflightError: If the events table is missing or another run is active
        """
        if not self.repository.exists():
            raise PreflightError('Event storage does not exist.')

        if not self.store.try_acquire(self.now()):
            raise PreflightError('Another operation is already running.', busy=True)

        if init is InitMode.SOFT:
            previous = self.store.get_last_run() or LastRunRecord()
            self.store.update(
                processed=0,
                page=0,
                total=0,
                added=previous.added,
                deleted=previous.deleted
            )
        elif init is InitMode.RESUME:
            previous = self.store.get_last_run() or LastRunRecord()
            self.store.update(
                processed=previous.processed,
                page=page if page is not None else previous.page,
                added=previous.added,
                deleted=previous.deleted
            )
        else:
            self.store.update(processed=0, page=0, added=0, deleted=0, total=0)

        self.record_last_run(args)
        logger.info(
            f"Preflight passed for {args.action}",
            extra={'init': init.value, 'fetch_date': args.date, 'event_id': args.event_id}
        )

    def postflight(self, args: RunArgs) -> None:
        """Checkpoint the finished run and release it."""
        self.record_last_run(args)

        # Allow time for writes to settle
        if self.settle_seconds:
            self.sleep(self.settle_seconds)

        self.store.release(self.now())
        logger.info(f"Postflight complete for {args.action}")

    def record_last_run(self, args: RunArgs) -> LastRunRecord:
        record = LastRunRecord.from_state(args, self.store.get_state())
        self.store.set_last_run(record)
        return record

    def _check_cancel(self, args: RunArgs) -> None:
        if self.token.is_canceled():
            record = self.record_last_run(args)
            logger.info(
                f"Run {args.action} canceled at {record.processed} processed",
                extra={'page': record.page, 'added': record.added, 'deleted': record.deleted}
            )
            raise RunCanceled(args.action)

    # ==== Importing ====

    def fetch_and_cache_live(self, start_date: str, use_cache: bool) -> Optional[dict]:
        """
        Fetch the live listing, preferring a fresh cached copy.

        Args:
            start_date: Start date for the data pull
            use_cache: Whether a cached copy may be used

        Returns:
            Decoded listing, or None if the remote fetch failed
        """
        name = self.cache.key_for(start_date)
        cached = self.cache.retrieve(name)

        if use_cache and cached is not None and cached.is_fresh(self.clock()):
            try:
                events = decode_json(cached.text())
            except ValueError:
                logger.warning(f"Discarding unreadable cache row {name}")
                events = None
            if events:
                logger.info(f"Using cached results from {name}")
                return events

        raw = self.api.fetch_live_since_raw(start_date)
        if not raw:
            return None

        try:
            results = decode_json(raw)
        except ValueError as e:
            logger.error(f"Live listing is not valid JSON: {e}")
            return None

        self.cache.save(name, raw, cached.row_id if cached else None)
        return results

    def import_events_by_chunk(self, start_date: str, use_cache: bool, args: RunArgs) -> None:
        """
        Import one chunk of the live listing, starting at the processed cursor.

        Args:
            start_date: The start date for the data pull
            use_cache: Whether cached listing data may be used
            args: Identity of the running action

        Raises:
            FetchError: If the listing is empty or malformed
            RunCanceled: If the run was canceled
        """
        self.store.set_method(Method(Phase.IMPORT, Step.FETCH))
        chunk_start = self.store.get_state().processed

        listing = self.processor.extract_listing(self.fetch_and_cache_live(start_date, use_cache))
        if listing is None:
            raise FetchError('In import_events_by_chunk, empty results returned.')

        self.store.update(total=listing.total)
        self._check_cancel(args)

        self.store.set_method(Method(Phase.IMPORT, Step.UPDATE))

        chunk = listing.events[chunk_start:chunk_start + self.chunk_size]
        logger.info(f"Importing {len(chunk)} events starting at {chunk_start} of {listing.total}")

        for item in chunk:
            self._check_cancel(args)
            event_id = item.get('ID') if isinstance(item, dict) else None
            success = self.fetch_and_save_event(event_id)
            self.store.increment(processed=1, added=1 if success else 0)

    def import_single_event(self, event_id: str, args: RunArgs) -> bool:
        """
        Import a single event.

        Returns:
            True if the event was saved
        """
        self.store.set_method(Method(Phase.IMPORT, Step.UPDATE))
        self.store.update(total=1, processed=1)

        success = self.fetch_and_save_event(event_id)
        if success:
            self.store.update(added=1)
        return success

    def fetch_and_save_event(self, event_id) -> bool:
        """
        Fetch detail for one event and upsert it.

        Failures are logged and reported as False; they never abort a batch.
        """
        if not event_id:
            logger.warning("Skipping listing entry without an ID")
            return False

        event_data = self.api.fetch_by_id(str(event_id))
        parsed = self.processor.parse_event_detail(event_data)
        if parsed is None:
            logger.warning(f"Invalid data returned for event with ID #{event_id}")
            return False

        event, venue = parsed
        try:
            post_id = self.insert_or_update_post(event)
            self.set_post_metadata(post_id, event)
            self.set_category_taxonomy(post_id, event)
            self.set_custom_taxonomies(post_id, venue)
        except (ClientError, TypeError, ValueError) as e:
            logger.error(f"Failed to insert or update event with ID #{event_id}: {e}")
            return False

        return True

    def _event_mapping(self) -> Dict[str, str]:
        if self._existing_events is None:
            self._existing_events = self.repository.event_id_mapping()
        return self._existing_events

    def insert_or_update_post(self, event: EventRecord) -> str:
        """
        Create or update the post for an event.

        Returns:
            The post ID
        """
        mapping = self._event_mapping()
        fields = {'title': event.name, 'slug': event.slug, 'content': event.description}

        post_id = mapping.get(event.event_id)
        if post_id:
            try:
                return self.repository.update_event(post_id, fields)
            except ClientError as e:
                if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                    raise
                logger.warning(f"Post {post_id} for event #{event.event_id} no longer exists")

        post_id = self.repository.insert_event(fields)
        mapping[event.event_id] = post_id
        return post_id

    def set_post_metadata(self, post_id: str, event: EventRecord) -> None:
        self.repository.set_meta(post_id, {
            'event_id': event.event_id,
            'start_date': event.start_date,
            'end_date': event.end_date,
            'venue': event.venue_id,
            'phone': event.phone,
            'website': event.url,
            'static': event.static,
            'featured': event.featured
        })

    def set_category_taxonomy(self, post_id: str, event: EventRecord) -> None:
        if event.categories:
            self.repository.set_terms(post_id, EventRepository.CATEGORIES, event.categories)

    def set_custom_taxonomies(self, post_id: str, venue: Venue) -> None:
        """Assign region and venue terms and record venue details on the venue term."""
        self.repository.set_terms(post_id, EventRepository.REGIONS, [venue.neighborhood])

        names = self.repository.set_terms(post_id, EventRepository.VENUES, [venue.name])
        if not names:
            logger.warning(f"Could not set venue for event post {post_id}")
            return

        details = dict(venue.address)
        details.update({
            'venue_id': venue.venue_id,
            'neighborhood': venue.neighborhood,
            'classification': venue.classification
        })
        self.repository.update_term(
            EventRepository.VENUES,
            names[0],
            description=venue.description,
            details=details
        )

    # ==== Deletion ====

    def delete_stale_events(self, start_date: str, args: RunArgs) -> None:
        """
        Delete local posts for one chunk of events the remote source dropped.

        Raises:
            FetchError: If the dropped listing is empty or malformed
            RunCanceled: If the run was canceled
        """
        self.store.set_method(Method(Phase.DELETE, Step.FETCH))
        cursor = self.store.get_state().processed

        listing = self.processor.extract_listing(self.api.fetch_dropped_since(start_date))
        if listing is None:
            raise FetchError('Empty results returned while deleting stale events.')

        self.store.update(total=listing.total)
        self._check_cancel(args)

        self.store.set_method(Method(Phase.DELETE, Step.PRUNE))

        for item in listing.events[cursor:cursor + self.chunk_size]:
            self._check_cancel(args)
            event_id = item.get('ID') if isinstance(item, dict) else None
            if not event_id:
                name = item.get('Name') if isinstance(item, dict) else None
                logger.warning(f"Event with name {name} has no ID and cannot be pruned")
            else:
                # Duplicates are possible
                for post_id in self.repository.find_by_event_id(str(event_id)):
                    if self._delete_post(post_id):
                        self.store.increment(deleted=1)
            self.store.increment(processed=1)

        self.remove_event_metadata()
        self.remove_orphaned_data()

    def delete_all_by_chunk(self, args: RunArgs) -> None:
        """
        Delete one chunk of stored posts.

        Raises:
            RunCanceled: If the run was canceled
        """
        self.store.set_method(Method(Phase.DELETE, Step.FETCH))
        processed = self.store.get_state().processed

        post_ids, remaining = self.repository.list_event_ids(self.chunk_size)

        if post_ids:
            self.store.set_method(Method(Phase.DELETE, Step.PRUNE))
            self.store.update(total=remaining + processed)
            self._check_cancel(args)

            for post_id in post_ids:
                self._check_cancel(args)
                success = self._delete_post(post_id)
                self.store.increment(processed=1, deleted=1 if success else 0)
        else:
            self.store.update(total=processed)

        self.remove_event_metadata()
        self.remove_orphaned_data()

    def _delete_post(self, post_id: str) -> bool:
        try:
            deleted = self.repository.delete_event(post_id)
        except ClientError as e:
            logger.error(f"Failed to delete post {post_id}: {e}")
            return False

        if deleted and self._existing_events is not None:
            for event_id, mapped in list(self._existing_events.items()):
                if mapped == post_id:
                    del self._existing_events[event_id]
        return deleted

    def remove_event_metadata(self) -> int:
        """Delete taxonomy terms with no posts."""
        self.store.set_method(Method(Phase.DELETE, Step.META))
        return self.repository.delete_empty_terms()

    def remove_orphaned_data(self) -> int:
        """Delete metadata left behind by posts that no longer exist."""
        self.store.set_method(Method(Phase.DELETE, Step.CLEANUP))
        return self.repository.delete_orphaned_meta()

    # ==== Cache management ====

    def clear_event_cache(self) -> int:
        """
        Remove every cached listing.

        Returns:
            Number of rows removed
        """
        self.store.set_method(Method(Phase.CACHE, Step.DELETE))

        cache_count = self.cache.count()
        self.store.update(processed=cache_count, total=cache_count)

        cleared = self.cache.clear()
        self.store.update(deleted=cleared)
        return cleared
