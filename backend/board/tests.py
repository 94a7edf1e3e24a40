"""
Tests for the Confession Board

Focus areas:
1. Identity resolution (cache fast path, remote hit, collisions, fallback)
2. Reaction state machine (toggle, retract, switch, one row per voter)
3. Comment thread assembly (ordering, counts, viewer reaction)
"""

from datetime import timedelta
from unittest.mock import Mock, patch

from django.contrib.sessions.backends.signed_cookies import SessionStore
from django.core.files.storage import InMemoryStorage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import InterfaceError, OperationalError
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APITestCase

from .exceptions import (
    ConflictError,
    EntityNotFoundError,
    IdentityRequiredError,
    TransientStoreError,
    ValidationError,
)
from .identity import (
    DeviceFingerprint,
    IdentityResolver,
    ResolutionSource,
    ResolverState,
    fallback_anonymous_id,
    string_hash,
)
from .media import MediaItem, MediaStore, StorageMediaStore, decode_media_urls, validate_uploads
from .models import (
    AnonymousIdentity,
    Confession,
    ConfessionReaction,
    ConfessionComment,
    CommentReaction,
)
from .queries import assemble_thread, get_comment_thread, get_feed, reaction_summary, summarize_reactions
from .services import ReactionCoordinator, create_comment, create_confession
from .session import BoardSession, RequestSequencer
from .store import (
    DeviceCache,
    DjangoRecordStore,
    RecordStore,
    SessionDeviceCache,
    CONFESSIONS,
    CONFESSION_REACTIONS,
)

IN_MEMORY_STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.InMemoryStorage'},
    'staticfiles': {'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage'},
}


def make_fingerprint(canvas='canvas-signature'):
    return DeviceFingerprint(
        user_agent='Mozilla/5.0 (X11; Linux x86_64) TestBrowser/1.0',
        language='en-US',
        platform='Linux x86_64',
        screen_resolution='1920x1080',
        timezone='Europe/Berlin',
        canvas=canvas,
    )


def device_cache():
    """A fresh, empty device cache (a signed-cookie session not yet sent)."""
    return SessionDeviceCache(SessionStore())


class DeviceFingerprintTestCase(SimpleTestCase):
    """Fingerprints must be stable for an unchanged device."""

    def test_same_device_same_hash(self):
        self.assertEqual(make_fingerprint().fingerprint_hash, make_fingerprint().fingerprint_hash)

    def test_different_canvas_different_hash(self):
        self.assertNotEqual(
            make_fingerprint('one').fingerprint_hash,
            make_fingerprint('two').fingerprint_hash
        )

    def test_hash_is_md5_hex(self):
        fingerprint_hash = make_fingerprint().fingerprint_hash
        self.assertEqual(len(fingerprint_hash), 32)
        int(fingerprint_hash, 16)

    def test_from_request_uses_headers_as_defaults(self):
        request = RequestFactory().post(
            '/api/identity/',
            HTTP_USER_AGENT='HeaderAgent/2.0',
            HTTP_ACCEPT_LANGUAGE='de-DE,de;q=0.9,en;q=0.8',
        )
        fingerprint = DeviceFingerprint.from_request(request, {'platform': 'MacIntel'})

        self.assertEqual(fingerprint.user_agent, 'HeaderAgent/2.0')
        self.assertEqual(fingerprint.language, 'de-DE')
        self.assertEqual(fingerprint.platform, 'MacIntel')

    def test_from_request_prefers_client_values(self):
        request = RequestFactory().post('/api/identity/', HTTP_USER_AGENT='HeaderAgent/2.0')
        fingerprint = DeviceFingerprint.from_request(request, {'user_agent': 'ClientAgent/3.0'})
        self.assertEqual(fingerprint.user_agent, 'ClientAgent/3.0')


class FallbackIdTestCase(SimpleTestCase):

    def test_string_hash_matches_31_multiplier_hash(self):
        self.assertEqual(string_hash(''), 0)
        self.assertEqual(string_hash('a'), 97)
        self.assertEqual(string_hash('ab'), 97 * 31 + 98)
        # Wraps to signed 32-bit, same as Java's "hello world".hashCode()
        self.assertEqual(string_hash('hello world'), 1794106052)
        self.assertEqual(string_hash('polygenelubricants'), -2147483648)

    def test_fallback_is_deterministic_and_in_range(self):
        fingerprint_hash = make_fingerprint().fingerprint_hash
        first = fallback_anonymous_id(fingerprint_hash)
        second = fallback_anonymous_id(fingerprint_hash)

        self.assertEqual(first, second)
        self.assertTrue(10000 <= int(first) <= 99999)

    def test_fallback_handles_int32_min(self):
        # abs(-2**31) must still land in range
        fallback = fallback_anonymous_id('polygenelubricants')
        self.assertEqual(fallback, str(2147483648 % 90000 + 10000))


class IdentityResolverTestCase(TestCase):
    """
    Identity resolution against the real ORM store.

    CRITICAL: These tests verify that:
    1. A returning device never hits the store
    2. Collisions are retried a bounded number of times
    3. An unreachable store still yields a stable id
    """

    def setUp(self):
        self.store = DjangoRecordStore()
        self.fingerprint = make_fingerprint()
        self.cache = device_cache()

    def test_first_visit_creates_identity(self):
        resolver = IdentityResolver(self.store, self.cache, self.fingerprint)
        self.assertEqual(resolver.state, ResolverState.UNRESOLVED)

        identity = resolver.resolve()

        self.assertEqual(resolver.state, ResolverState.RESOLVED)
        self.assertEqual(resolver.source, ResolutionSource.CREATED)
        self.assertRegex(identity.id, r'^\d{5}$')
        self.assertEqual(identity.fingerprint_hash, self.fingerprint.fingerprint_hash)
        self.assertEqual(self.cache.get('anonymous_id'), identity.id)

        row = AnonymousIdentity.objects.get(anonymous_id=identity.id)
        self.assertEqual(row.device_fingerprint_hash, self.fingerprint.fingerprint_hash)
        self.assertLessEqual(len(row.device_fingerprint), 500)

    def test_resolve_is_idempotent_within_session(self):
        store = Mock(wraps=self.store)
        resolver = IdentityResolver(store, self.cache, self.fingerprint)

        first = resolver.resolve()
        store.reset_mock()
        second = resolver.resolve()

        self.assertEqual(first, second)
        self.assertEqual(store.mock_calls, [])

    def test_cached_id_returned_without_remote_call(self):
        self.cache.set('anonymous_id', '12345')
        store = Mock(spec=RecordStore)

        identity = IdentityResolver(store, self.cache, self.fingerprint).resolve()

        self.assertEqual(identity.id, '12345')
        store.find_one.assert_not_called()
        store.insert.assert_not_called()

    def test_returning_device_with_cleared_cache_gets_same_id(self):
        """Local cache cleared, store still remembers the device."""
        original = IdentityResolver(self.store, self.cache, self.fingerprint).resolve()

        fresh_cache = device_cache()
        resolver = IdentityResolver(self.store, fresh_cache, self.fingerprint)
        identity = resolver.resolve()

        self.assertEqual(identity.id, original.id)
        self.assertEqual(resolver.source, ResolutionSource.REMOTE)
        self.assertEqual(fresh_cache.get('anonymous_id'), original.id)
        self.assertEqual(AnonymousIdentity.objects.count(), 1)

    def test_collision_retry_makes_exactly_three_inserts(self):
        AnonymousIdentity.objects.create(anonymous_id='11111', device_fingerprint_hash='other-device-1')
        AnonymousIdentity.objects.create(anonymous_id='22222', device_fingerprint_hash='other-device-2')

        store = Mock(wraps=self.store)
        id_generator = Mock(side_effect=['11111', '22222', '33333'])
        resolver = IdentityResolver(store, self.cache, self.fingerprint, id_generator=id_generator)

        identity = resolver.resolve()

        self.assertEqual(identity.id, '33333')
        self.assertEqual(store.insert.call_count, 3)
        self.assertEqual(resolver.insert_attempts, 3)
        self.assertEqual(resolver.source, ResolutionSource.CREATED)

    def test_adopts_identity_created_by_racing_session(self):
        """Another session for the same device wins the insert race."""
        fingerprint_hash = self.fingerprint.fingerprint_hash
        AnonymousIdentity.objects.create(anonymous_id='44444', device_fingerprint_hash=fingerprint_hash)

        store = Mock(wraps=self.store)
        # First lookup happens before the other session's insert lands
        store.find_one.side_effect = [None, {'anonymous_id': '44444'}]
        resolver = IdentityResolver(store, self.cache, self.fingerprint, id_generator=lambda: '55555')

        identity = resolver.resolve()

        self.assertEqual(identity.id, '44444')
        self.assertEqual(resolver.source, ResolutionSource.ADOPTED)
        self.assertEqual(store.insert.call_count, 1)
        self.assertFalse(AnonymousIdentity.objects.filter(anonymous_id='55555').exists())

    def test_unreachable_store_falls_back_deterministically(self):
        store = Mock(spec=RecordStore)
        store.find_one.side_effect = TransientStoreError()
        store.insert.side_effect = TransientStoreError()

        first = IdentityResolver(store, device_cache(), self.fingerprint)
        second = IdentityResolver(store, device_cache(), self.fingerprint)

        self.assertEqual(first.resolve().id, second.resolve().id)
        self.assertEqual(first.resolve().id, fallback_anonymous_id(self.fingerprint.fingerprint_hash))
        self.assertEqual(first.source, ResolutionSource.FALLBACK)
        # Bounded: 5 attempts per resolver, never more
        self.assertEqual(store.insert.call_count, 10)

    def test_conflict_storm_falls_back_after_five_attempts(self):
        store = Mock(spec=RecordStore)
        store.find_one.return_value = None
        store.insert.side_effect = ConflictError()
        cache = device_cache()

        identity = IdentityResolver(store, cache, self.fingerprint).resolve()

        self.assertEqual(store.insert.call_count, 5)
        self.assertEqual(identity.id, fallback_anonymous_id(self.fingerprint.fingerprint_hash))
        # Fallback is cached like any other id
        self.assertEqual(cache.get('anonymous_id'), identity.id)

    def test_cache_write_failure_is_not_fatal(self):
        cache = Mock(spec=DeviceCache)
        cache.get.return_value = None
        cache.set.side_effect = RuntimeError('storage quota exceeded')

        identity = IdentityResolver(self.store, cache, self.fingerprint).resolve()

        self.assertTrue(AnonymousIdentity.objects.filter(anonymous_id=identity.id).exists())

    def test_cache_read_failure_resolves_remotely(self):
        cache = Mock(spec=DeviceCache)
        cache.get.side_effect = RuntimeError('cookies disabled')

        resolver = IdentityResolver(self.store, cache, self.fingerprint)
        resolver.resolve()

        self.assertEqual(resolver.source, ResolutionSource.CREATED)

    def test_malformed_cached_value_is_ignored(self):
        self.cache.set('anonymous_id', 'not-an-id')

        resolver = IdentityResolver(self.store, self.cache, self.fingerprint)
        identity = resolver.resolve()

        self.assertEqual(resolver.source, ResolutionSource.CREATED)
        self.assertEqual(self.cache.get('anonymous_id'), identity.id)

    def test_closed_connection_falls_back_instead_of_raising(self):
        closed = InterfaceError('connection already closed')
        manager = AnonymousIdentity.objects

        with patch.object(manager, 'filter', side_effect=closed), \
                patch.object(manager, 'create', side_effect=closed):
            resolver = IdentityResolver(self.store, self.cache, self.fingerprint)
            identity = resolver.resolve()

        self.assertEqual(identity.id, fallback_anonymous_id(self.fingerprint.fingerprint_hash))
        self.assertEqual(resolver.source, ResolutionSource.FALLBACK)
        self.assertEqual(resolver.insert_attempts, 5)


class DjangoRecordStoreTestCase(TestCase):
    """Database errors never leave the store as Django exceptions."""

    def setUp(self):
        self.store = DjangoRecordStore()

    def test_interface_error_is_transient(self):
        with patch.object(Confession.objects, 'filter', side_effect=InterfaceError('connection already closed')):
            with self.assertRaises(TransientStoreError):
                self.store.find_one(CONFESSIONS, id='00000000-0000-0000-0000-000000000000')

    def test_operational_error_is_transient(self):
        with patch.object(Confession.objects, 'create', side_effect=OperationalError('database is locked')):
            with self.assertRaises(TransientStoreError):
                self.store.insert(CONFESSIONS, {'user_id': '10001', 'content': 'hello'})

    def test_unique_violation_is_conflict(self):
        AnonymousIdentity.objects.create(anonymous_id='12345', device_fingerprint_hash='device-a')
        with self.assertRaises(ConflictError):
            self.store.insert('anonymous_users', {'anonymous_id': '12345', 'device_fingerprint_hash': 'device-b'})


class ReactionCoordinatorTestCase(TestCase):
    """
    Test the toggle/retract/switch state machine.

    CRITICAL: at most one reaction row per (entity, voter), always.
    """

    def setUp(self):
        self.store = DjangoRecordStore()
        self.coordinator = ReactionCoordinator(self.store)
        self.confession = Confession.objects.create(user_id='10001', content='I never learned to whistle.')
        self.comment = ConfessionComment.objects.create(
            confession=self.confession, user_id='10002', content='Me neither'
        )
        self.voter = '20001'

    def reactions(self):
        return ConfessionReaction.objects.filter(confession=self.confession, user_id=self.voter)

    def test_none_to_like_inserts(self):
        result = self.coordinator.apply_reaction('confession', self.confession.id, self.voter, True)

        self.assertEqual(result.action, 'created')
        self.assertEqual(self.reactions().count(), 1)
        self.assertTrue(self.reactions().get().is_like)

    def test_none_to_dislike_inserts(self):
        self.coordinator.apply_reaction('confession', self.confession.id, self.voter, False)
        self.assertFalse(self.reactions().get().is_like)

    def test_same_button_twice_retracts(self):
        """Toggle law: like then like again leaves no row."""
        self.coordinator.apply_reaction('confession', self.confession.id, self.voter, True)
        result = self.coordinator.apply_reaction('confession', self.confession.id, self.voter, True)

        self.assertEqual(result.action, 'removed')
        self.assertIsNone(result.is_like)
        self.assertEqual(self.reactions().count(), 0)

    def test_like_then_dislike_switches_in_place(self):
        """Switch law: exactly one row, is_like=False, same row updated."""
        self.coordinator.apply_reaction('confession', self.confession.id, self.voter, True)
        original_id = self.reactions().get().id

        result = self.coordinator.apply_reaction('confession', self.confession.id, self.voter, False)

        self.assertEqual(result.action, 'switched')
        self.assertEqual(self.reactions().count(), 1)
        reaction = self.reactions().get()
        self.assertFalse(reaction.is_like)
        self.assertEqual(reaction.id, original_id)

    def test_dislike_then_like_switches(self):
        self.coordinator.apply_reaction('confession', self.confession.id, self.voter, False)
        self.coordinator.apply_reaction('confession', self.confession.id, self.voter, True)
        self.assertTrue(self.reactions().get().is_like)

    def test_at_most_one_row_for_any_sequence(self):
        for desired in [True, False, False, True, True, False, True, False, False]:
            self.coordinator.apply_reaction('confession', self.confession.id, self.voter, desired)
            self.assertLessEqual(self.reactions().count(), 1)

    def test_comment_reactions_follow_same_rules(self):
        self.coordinator.apply_reaction('comment', self.comment.id, self.voter, True)
        self.coordinator.apply_reaction('comment', self.comment.id, self.voter, False)

        rows = CommentReaction.objects.filter(comment=self.comment, user_id=self.voter)
        self.assertEqual(rows.count(), 1)
        self.assertFalse(rows.get().is_like)

        self.coordinator.apply_reaction('comment', self.comment.id, self.voter, False)
        self.assertEqual(rows.count(), 0)

    def test_voters_are_independent(self):
        self.coordinator.apply_reaction('confession', self.confession.id, self.voter, True)
        self.coordinator.apply_reaction('confession', self.confession.id, '20002', True)

        self.assertEqual(ConfessionReaction.objects.filter(confession=self.confession).count(), 2)

    def test_concurrent_insert_by_same_voter_keeps_one_row(self):
        """The read missed a row inserted concurrently: last write wins."""
        ConfessionReaction.objects.create(confession=self.confession, user_id=self.voter, is_like=True)
        winner = self.store.find_one(CONFESSION_REACTIONS, confession_id=self.confession.id, user_id=self.voter)

        store = Mock(wraps=self.store)
        store.find_one.side_effect = [None, winner]
        ReactionCoordinator(store).apply_reaction('confession', self.confession.id, self.voter, False)

        self.assertEqual(self.reactions().count(), 1)
        self.assertFalse(self.reactions().get().is_like)

    def test_conflict_then_retracted_winner_retries_insert(self):
        """The concurrent row vanished before the re-read: the click still lands."""
        store = Mock(spec=RecordStore)
        store.find_one.return_value = None
        store.insert.side_effect = [ConflictError(), {'id': 'r1'}]

        result = ReactionCoordinator(store).apply_reaction('confession', self.confession.id, self.voter, True)

        self.assertEqual(result.action, 'created')
        self.assertEqual(store.insert.call_count, 2)
        store.update.assert_not_called()

    def test_invalid_entity_kind(self):
        with self.assertRaises(ValueError):
            self.coordinator.apply_reaction('post', self.confession.id, self.voter, True)

    def test_store_errors_propagate(self):
        store = Mock(spec=RecordStore)
        store.find_one.side_effect = TransientStoreError()

        with self.assertRaises(TransientStoreError):
            ReactionCoordinator(store).apply_reaction('confession', self.confession.id, self.voter, True)
        store.insert.assert_not_called()


def comment_row(comment_id, parent_id, minutes, reactions=()):
    base = timezone.now() - timedelta(hours=1)
    return {
        'id': comment_id,
        'confession_id': 'c1',
        'parent_comment_id': parent_id,
        'user_id': '10001',
        'content': f'comment {comment_id}',
        'created_at': base + timedelta(minutes=minutes),
        'comment_likes': [{'user_id': voter, 'is_like': is_like} for voter, is_like in reactions],
    }


class ThreadAssemblyTestCase(SimpleTestCase):
    """assemble_thread is pure: plain dicts in, tree out."""

    def test_tree_structure_and_order(self):
        rows = [
            comment_row(1, None, 1),
            comment_row(2, 1, 2),
            comment_row(3, 1, 3),
            comment_row(4, None, 4),
        ]

        tree = assemble_thread(rows, viewer_id=None)

        self.assertEqual([node['id'] for node in tree], [1, 4])
        self.assertEqual([reply['id'] for reply in tree[0]['replies']], [2, 3])
        self.assertEqual(tree[1]['replies'], [])

    def test_rows_out_of_order_are_sorted_chronologically(self):
        rows = [
            comment_row(4, None, 4),
            comment_row(3, 1, 3),
            comment_row(1, None, 1),
            comment_row(2, 1, 2),
        ]

        tree = assemble_thread(rows)

        self.assertEqual([node['id'] for node in tree], [1, 4])
        self.assertEqual([reply['id'] for reply in tree[0]['replies']], [2, 3])

    def test_duplicated_voter_counted_once(self):
        rows = [comment_row(1, None, 1, reactions=[('a', True), ('b', False), ('a', True)])]

        node = assemble_thread(rows)[0]

        self.assertEqual(node['likes_count'], 1)
        self.assertEqual(node['dislikes_count'], 1)

    def test_viewer_reaction(self):
        rows = [comment_row(1, None, 1, reactions=[('a', True), ('b', False)])]

        self.assertTrue(assemble_thread(rows, 'a')[0]['user_reaction'])
        self.assertIs(assemble_thread(rows, 'b')[0]['user_reaction'], False)
        # No reaction and no viewer are both "no reaction", not a dislike
        self.assertIsNone(assemble_thread(rows, 'c')[0]['user_reaction'])
        self.assertIsNone(assemble_thread(rows, None)[0]['user_reaction'])

    def test_reply_counts_are_computed_too(self):
        rows = [
            comment_row(1, None, 1),
            comment_row(2, 1, 2, reactions=[('a', False), ('b', False)]),
        ]

        reply = assemble_thread(rows, 'a')[0]['replies'][0]

        self.assertEqual(reply['dislikes_count'], 2)
        self.assertIs(reply['user_reaction'], False)

    def test_orphan_reply_is_dropped(self):
        rows = [comment_row(1, None, 1), comment_row(2, 99, 2)]

        tree = assemble_thread(rows)

        self.assertEqual(len(tree), 1)
        self.assertEqual(tree[0]['replies'], [])

    def test_reply_to_reply_is_flattened_under_top_level_parent(self):
        rows = [comment_row(1, None, 1), comment_row(2, 1, 2), comment_row(3, 2, 3)]

        tree = assemble_thread(rows)

        self.assertEqual([reply['id'] for reply in tree[0]['replies']], [2, 3])

    def test_empty_input(self):
        self.assertEqual(assemble_thread([], 'a'), [])

    def test_summarize_reactions_later_row_wins(self):
        self.assertEqual(
            summarize_reactions([{'user_id': 'a', 'is_like': True}, {'user_id': 'a', 'is_like': False}], 'a'),
            (0, 1, False)
        )


class FeedQueryTestCase(TestCase):
    """Feed and thread reads: counts from rows, sort options, query count."""

    def setUp(self):
        self.store = DjangoRecordStore()
        now = timezone.now()
        self.old = Confession.objects.create(user_id='10001', content='old', created_at=now - timedelta(hours=3))
        self.mid = Confession.objects.create(user_id='10002', content='mid', created_at=now - timedelta(hours=2))
        self.new = Confession.objects.create(user_id='10003', content='new', created_at=now - timedelta(hours=1))

        # old: +2, mid: -1, new: 0
        ConfessionReaction.objects.create(confession=self.old, user_id='a', is_like=True)
        ConfessionReaction.objects.create(confession=self.old, user_id='b', is_like=True)
        ConfessionReaction.objects.create(confession=self.mid, user_id='a', is_like=False)

        parent = ConfessionComment.objects.create(
            confession=self.new, user_id='a', content='first', created_at=now - timedelta(minutes=30)
        )
        ConfessionComment.objects.create(
            confession=self.new, user_id='b', content='reply', parent_comment=parent,
            created_at=now - timedelta(minutes=20)
        )

    def ids(self, feed):
        return [item['id'] for item in feed]

    def test_latest_is_newest_first(self):
        feed = get_feed(self.store, None, 'latest')
        self.assertEqual(self.ids(feed), [self.new.id, self.mid.id, self.old.id])

    def test_oldest_is_oldest_first(self):
        feed = get_feed(self.store, None, 'oldest')
        self.assertEqual(self.ids(feed), [self.old.id, self.mid.id, self.new.id])

    def test_popular_orders_by_net_score(self):
        feed = get_feed(self.store, None, 'popular')
        self.assertEqual(self.ids(feed), [self.old.id, self.new.id, self.mid.id])

    def test_counts_and_viewer_reaction(self):
        feed = {item['id']: item for item in get_feed(self.store, 'a', 'latest')}

        self.assertEqual(feed[self.old.id]['likes_count'], 2)
        self.assertTrue(feed[self.old.id]['user_reaction'])
        self.assertEqual(feed[self.mid.id]['dislikes_count'], 1)
        self.assertIs(feed[self.mid.id]['user_reaction'], False)
        self.assertIsNone(feed[self.new.id]['user_reaction'])
        # Replies count as comments
        self.assertEqual(feed[self.new.id]['comments_count'], 2)
        self.assertEqual(feed[self.old.id]['comments_count'], 0)

    def test_limit(self):
        self.assertEqual(len(get_feed(self.store, None, 'latest', limit=2)), 2)

    def test_unknown_sort_rejected(self):
        with self.assertRaises(ValidationError):
            get_feed(self.store, None, 'random')

    def test_unparseable_media_decodes_to_empty_list(self):
        Confession.objects.filter(id=self.old.id).update(media_urls='not json at all')
        feed = {item['id']: item for item in get_feed(self.store, None)}
        self.assertEqual(feed[self.old.id]['media_urls'], [])

    def test_feed_query_count(self):
        """1 for confessions with comment counts + 1 for reactions, no N+1."""
        with self.assertNumQueries(2):
            get_feed(self.store, 'a')

    def test_counted_relation_is_not_loaded(self):
        rows = self.store.list_with_joins(CONFESSIONS, order=('created_at',), counts=('confession_comments',))

        self.assertEqual([row['confession_comments_count'] for row in rows], [0, 0, 2])
        self.assertNotIn('confession_comments', rows[0])

    def test_thread_query_count(self):
        with self.assertNumQueries(2):
            thread = get_comment_thread(self.store, self.new.id, 'a')

        self.assertEqual(len(thread), 1)
        self.assertEqual(len(thread[0]['replies']), 1)

    def test_reaction_summary_reads_fresh_counts(self):
        summary = reaction_summary(self.store, 'confession', self.old.id, 'b')
        self.assertEqual(summary, {'likes_count': 2, 'dislikes_count': 0, 'user_reaction': True})


class MediaTestCase(SimpleTestCase):

    def test_decode_json_string(self):
        raw = '[{"url": "https://cdn/a.png", "type": "image"}]'
        self.assertEqual(decode_media_urls(raw), [MediaItem(url='https://cdn/a.png', type='image')])

    def test_decode_list(self):
        raw = [{'url': 'https://cdn/b.mp4', 'type': 'video'}]
        self.assertEqual(decode_media_urls(raw), [MediaItem(url='https://cdn/b.mp4', type='video')])

    def test_decode_failures_fall_back_to_empty(self):
        for raw in [None, '', '{broken', '{"url": "x"}', [{'url': 'x', 'type': 'audio'}], [42], 7]:
            with self.subTest(raw=raw):
                self.assertEqual(decode_media_urls(raw), [])

    def test_validate_uploads_limits(self):
        image = SimpleUploadedFile('a.png', b'x', content_type='image/png')
        validate_uploads([image])

        with self.assertRaises(ValidationError):
            validate_uploads([image] * 8)

        big = SimpleUploadedFile('big.png', b'x' * (3 * 1024 * 1024 + 1), content_type='image/png')
        with self.assertRaises(ValidationError):
            validate_uploads([big])

        text = SimpleUploadedFile('notes.txt', b'x', content_type='text/plain')
        with self.assertRaises(ValidationError):
            validate_uploads([text])

    def test_storage_media_store_returns_public_url(self):
        media_store = StorageMediaStore(storage=InMemoryStorage(base_url='/media/'))
        url = media_store.put('10001-1-0.png', b'\x89PNG', 'image/png')
        self.assertEqual(url, '/media/confession-media/10001-1-0.png')

    def test_storage_media_store_delete(self):
        storage = InMemoryStorage(base_url='/media/')
        media_store = StorageMediaStore(storage=storage)
        media_store.put('10001-1-0.png', b'\x89PNG', 'image/png')

        media_store.delete('10001-1-0.png')

        self.assertFalse(storage.exists('confession-media/10001-1-0.png'))


class SingleUploadMediaStore(StorageMediaStore):
    """Accepts the first upload, then the bucket goes away."""

    def put(self, name, data, content_type):
        if self._saved:
            raise TransientStoreError('bucket unavailable')
        return super().put(name, data, content_type)


class ConfessionServiceTestCase(TestCase):

    def setUp(self):
        self.store = DjangoRecordStore()
        self.media_store = Mock(spec=MediaStore)
        self.media_store.put.return_value = 'https://cdn.example/file.png'

    def test_text_confession(self):
        confession = create_confession(self.store, self.media_store, '12345', '  I talk to my plants.  ')

        stored = Confession.objects.get(id=confession['id'])
        self.assertEqual(stored.content, 'I talk to my plants.')
        self.assertEqual(stored.media_urls, [])
        self.assertIsNone(stored.media_type)

    def test_confession_with_media(self):
        image = SimpleUploadedFile('cat.png', b'\x89PNG', content_type='image/png')

        confession = create_confession(self.store, self.media_store, '12345', '', [image])

        self.assertIsNone(confession['content'])
        self.assertEqual(confession['media_type'], 'mixed')
        self.assertEqual(confession['media_urls'], [{'url': 'https://cdn.example/file.png', 'type': 'image'}])
        name = self.media_store.put.call_args[0][0]
        self.assertTrue(name.startswith('12345-'))
        self.assertTrue(name.endswith('-0.png'))

    def test_validation_happens_before_any_write(self):
        store = Mock(spec=RecordStore)
        cases = [
            ('   ', []),
            ('x' * 1001, []),
            ('ok', [SimpleUploadedFile('a.txt', b'x', content_type='text/plain')]),
        ]
        for content, files in cases:
            with self.subTest(content=content[:10]):
                with self.assertRaises(ValidationError):
                    create_confession(store, self.media_store, '12345', content, files)
        store.insert.assert_not_called()
        self.media_store.put.assert_not_called()

    def test_failed_upload_aborts_confession(self):
        self.media_store.put.side_effect = TransientStoreError('bucket unavailable')
        image = SimpleUploadedFile('cat.png', b'\x89PNG', content_type='image/png')

        with self.assertRaises(TransientStoreError):
            create_confession(self.store, self.media_store, '12345', 'with a picture', [image])
        self.assertEqual(Confession.objects.count(), 0)

    def test_failed_second_upload_leaves_storage_empty(self):
        storage = InMemoryStorage(base_url='/media/')
        media_store = SingleUploadMediaStore(storage=storage)
        files = [
            SimpleUploadedFile('one.png', b'\x89PNG', content_type='image/png'),
            SimpleUploadedFile('two.mp4', b'\x00\x00', content_type='video/mp4'),
        ]

        with self.assertRaises(TransientStoreError):
            create_confession(self.store, media_store, '12345', 'two files', files)

        self.assertEqual(Confession.objects.count(), 0)
        self.assertEqual(storage.listdir('confession-media'), ([], []))

    def test_failed_insert_removes_uploads(self):
        store = Mock(spec=RecordStore)
        store.insert.side_effect = TransientStoreError('database down')
        image = SimpleUploadedFile('cat.png', b'\x89PNG', content_type='image/png')

        with self.assertRaises(TransientStoreError):
            create_confession(store, self.media_store, '12345', 'with a picture', [image])

        name = self.media_store.put.call_args[0][0]
        self.media_store.delete.assert_called_once_with(name)


class CommentServiceTestCase(TestCase):

    def setUp(self):
        self.store = DjangoRecordStore()
        self.confession = Confession.objects.create(user_id='10001', content='I cried at a car commercial.')
        self.other = Confession.objects.create(user_id='10001', content='Another one.')

    def test_top_level_comment(self):
        comment = create_comment(self.store, self.confession.id, '20001', '  same  ')

        self.assertEqual(comment['content'], 'same')
        self.assertIsNone(comment['parent_comment_id'])

    def test_reply(self):
        parent = create_comment(self.store, self.confession.id, '20001', 'parent')
        reply = create_comment(self.store, self.confession.id, '20002', 'reply', parent['id'])
        self.assertEqual(reply['parent_comment_id'], parent['id'])

    def test_reply_to_reply_is_stored_under_top_level_parent(self):
        parent = create_comment(self.store, self.confession.id, '20001', 'parent')
        reply = create_comment(self.store, self.confession.id, '20002', 'reply', parent['id'])
        nested = create_comment(self.store, self.confession.id, '20003', 'nested', reply['id'])

        self.assertEqual(nested['parent_comment_id'], parent['id'])

    def test_blank_comment_rejected(self):
        with self.assertRaises(ValidationError):
            create_comment(self.store, self.confession.id, '20001', '   ')
        self.assertEqual(ConfessionComment.objects.count(), 0)

    def test_parent_from_other_confession_rejected(self):
        foreign = create_comment(self.store, self.other.id, '20001', 'elsewhere')
        with self.assertRaises(ValidationError):
            create_comment(self.store, self.confession.id, '20002', 'reply', foreign['id'])

    def test_missing_confession(self):
        with self.assertRaises(EntityNotFoundError):
            create_comment(self.store, '00000000-0000-0000-0000-000000000000', '20001', 'hello')


class RequestSequencerTestCase(SimpleTestCase):

    def test_newer_request_supersedes_older(self):
        sequencer = RequestSequencer()
        first = sequencer.begin('feed')
        second = sequencer.begin('feed')

        self.assertFalse(sequencer.is_current('feed', first))
        self.assertTrue(sequencer.is_current('feed', second))

    def test_keys_are_independent(self):
        sequencer = RequestSequencer()
        feed = sequencer.begin('feed')
        sequencer.begin(('comments', 'c1'))

        self.assertTrue(sequencer.is_current('feed', feed))


class BoardSessionTestCase(TestCase):

    def setUp(self):
        self.store = DjangoRecordStore()
        self.cache = device_cache()
        self.confession = Confession.objects.create(user_id='10001', content='I skip songs I like.')

    def test_mutations_require_identity(self):
        board = BoardSession(self.store, self.cache)
        with self.assertRaises(IdentityRequiredError):
            board.react('confession', self.confession.id, True)

    def test_react_returns_fresh_counts(self):
        ConfessionReaction.objects.create(confession=self.confession, user_id='20002', is_like=True)
        self.cache.set('anonymous_id', '20001')
        board = BoardSession(self.store, self.cache)

        result = board.react('confession', self.confession.id, True)

        self.assertEqual(result, {
            'action': 'created',
            'likes_count': 2,
            'dislikes_count': 0,
            'user_reaction': True,
        })

    def test_react_on_missing_entity(self):
        self.cache.set('anonymous_id', '20001')
        board = BoardSession(self.store, self.cache)
        with self.assertRaises(EntityNotFoundError):
            board.react('comment', '00000000-0000-0000-0000-000000000000', True)

    def test_stale_comment_response_is_discarded(self):
        store = Mock(wraps=self.store)
        board = BoardSession(store, self.cache)
        ConfessionComment.objects.create(confession=self.confession, user_id='20001', content='hi')
        superseded = []
        entered = []

        def list_with_joins(*args, **kwargs):
            if not entered:
                entered.append(True)
                # A newer refresh for the same thread completes first
                superseded.append(board.refresh_comments(self.confession.id))
            return self.store.list_with_joins(*args, **kwargs)

        store.list_with_joins.side_effect = list_with_joins

        result = board.refresh_comments(self.confession.id)

        self.assertIsNone(result)
        self.assertEqual(len(superseded[0]), 1)
        self.assertIs(board.comments[str(self.confession.id)], superseded[0])

    def test_sequential_refreshes_are_both_kept(self):
        board = BoardSession(self.store, self.cache)

        first = board.refresh_feed('latest')
        Confession.objects.create(user_id='10002', content='Second one.')
        second = board.refresh_feed('latest')

        self.assertEqual(len(first), 1)
        self.assertEqual(len(second), 2)
        self.assertIs(board.confessions, second)

    def test_resolve_identity_and_close(self):
        board = BoardSession(self.store, self.cache, fingerprint=make_fingerprint())
        identity = board.resolve_identity()
        board.refresh_feed()

        self.assertEqual(board.viewer_id, identity.id)
        self.assertEqual(len(board.confessions), 1)

        board.close()
        self.assertEqual(board.confessions, [])
        self.assertIsNone(board.resolver)
        # The device cache outlives the session
        self.assertEqual(board.viewer_id, identity.id)


class ApiTestCase(APITestCase):
    """End-to-end through the DRF views with the signed-cookie device cache."""

    fingerprint = {
        'user_agent': 'Mozilla/5.0 TestBrowser/1.0',
        'language': 'en-US',
        'platform': 'Linux x86_64',
        'screen_resolution': '1280x720',
        'timezone': 'UTC',
        'canvas': 'data:image/png;base64,AAAA',
    }

    def identify(self):
        response = self.client.post('/api/identity/', self.fingerprint, format='json')
        self.assertEqual(response.status_code, 200)
        return response.data['anonymous_id']

    def test_identity_is_cached_on_device(self):
        response = self.client.post('/api/identity/', self.fingerprint, format='json')
        self.assertEqual(response.data['source'], 'created')
        anonymous_id = response.data['anonymous_id']

        again = self.client.post('/api/identity/', self.fingerprint, format='json')
        self.assertEqual(again.data['source'], 'cache')
        self.assertEqual(again.data['anonymous_id'], anonymous_id)

        whoami = self.client.get('/api/identity/')
        self.assertEqual(whoami.data['anonymous_id'], anonymous_id)

    def test_identity_unknown_device(self):
        self.assertEqual(self.client.get('/api/identity/').status_code, 404)

    def test_mutations_without_identity_are_forbidden(self):
        confession = Confession.objects.create(user_id='10001', content='hello')
        response = self.client.post(f'/api/confessions/{confession.id}/react/', {'is_like': True}, format='json')
        self.assertEqual(response.status_code, 403)

    def test_confession_reaction_flow(self):
        self.identify()
        created = self.client.post('/api/confessions/', {'content': 'I never read the terms.'}, format='json')
        self.assertEqual(created.status_code, 201)
        url = f"/api/confessions/{created.data['id']}/react/"

        liked = self.client.post(url, {'is_like': True}, format='json')
        self.assertEqual(liked.data['action'], 'created')
        self.assertEqual(liked.data['likes_count'], 1)
        self.assertTrue(liked.data['user_reaction'])

        switched = self.client.post(url, {'is_like': False}, format='json')
        self.assertEqual(switched.data['action'], 'switched')
        self.assertEqual((switched.data['likes_count'], switched.data['dislikes_count']), (0, 1))

        retracted = self.client.post(url, {'is_like': False}, format='json')
        self.assertEqual(retracted.data['action'], 'removed')
        self.assertIsNone(retracted.data['user_reaction'])

        feed = self.client.get('/api/feed/')
        self.assertEqual(feed.data['results'][0]['dislikes_count'], 0)

    def test_comment_thread_flow(self):
        self.identify()
        confession = Confession.objects.create(user_id='10001', content='I hum in elevators.')
        url = f'/api/confessions/{confession.id}/comments/'

        parent = self.client.post(url, {'content': 'Same!'}, format='json')
        self.assertEqual(parent.status_code, 201)
        self.client.post(url, {'content': 'Haha', 'parent_comment_id': parent.data['id']}, format='json')
        self.client.post(f"/api/comments/{parent.data['id']}/react/", {'is_like': True}, format='json')

        thread = self.client.get(url)
        self.assertEqual(thread.status_code, 200)
        self.assertEqual(len(thread.data), 1)
        self.assertEqual(thread.data[0]['likes_count'], 1)
        self.assertTrue(thread.data[0]['user_reaction'])
        self.assertEqual(thread.data[0]['replies'][0]['content'], 'Haha')

    def test_blank_comment_is_400(self):
        self.identify()
        confession = Confession.objects.create(user_id='10001', content='hello')
        response = self.client.post(f'/api/confessions/{confession.id}/comments/', {'content': '  '}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertIn('error', response.data)

    def test_missing_entities_are_404(self):
        self.identify()
        missing = '00000000-0000-0000-0000-000000000000'
        self.assertEqual(self.client.get(f'/api/confessions/{missing}/comments/').status_code, 404)
        response = self.client.post(f'/api/comments/{missing}/react/', {'is_like': True}, format='json')
        self.assertEqual(response.status_code, 404)

    def test_overlong_confession_is_400(self):
        self.identify()
        response = self.client.post('/api/confessions/', {'content': 'x' * 1001}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Confession.objects.count(), 0)

    def test_unknown_sort_is_400(self):
        self.assertEqual(self.client.get('/api/feed/?sort=random').status_code, 400)

    @override_settings(STORAGES=IN_MEMORY_STORAGES)
    def test_confession_with_media_upload(self):
        anonymous_id = self.identify()
        image = SimpleUploadedFile('cat.png', b'\x89PNG\r\n', content_type='image/png')

        response = self.client.post(
            '/api/confessions/',
            {'content': 'look at my cat', 'files': [image]},
            format='multipart'
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['user_id'], anonymous_id)
        self.assertEqual(len(response.data['media_urls']), 1)
        self.assertEqual(response.data['media_urls'][0]['type'], 'image')
        self.assertIn(f'{anonymous_id}-', response.data['media_urls'][0]['url'])
