"""
Management command to seed the database with sample data.

Usage: python manage.py seed_data

Everything goes through the same code paths as the API: identities are
resolved from synthetic device fingerprints, and confessions, comments and
reactions are created by the services.
"""

import random
from django.core.management.base import BaseCommand
from django.contrib.sessions.backends.signed_cookies import SessionStore

from board.identity import DeviceFingerprint, IdentityResolver
from board.media import StorageMediaStore
from board.models import (
    AnonymousIdentity,
    Confession,
    ConfessionReaction,
    ConfessionComment,
    CommentReaction,
)
from board.services import ReactionCoordinator, create_comment, create_confession
from board.store import DjangoRecordStore, SessionDeviceCache


class Command(BaseCommand):
    help = 'Seed the database with sample data for testing'

    def add_arguments(self, parser):
        parser.add_argument(
            '--devices',
            type=int,
            default=10,
            help='Number of anonymous devices to create'
        )
        parser.add_argument(
            '--confessions',
            type=int,
            default=20,
            help='Number of confessions to create'
        )
        parser.add_argument(
            '--comments',
            type=int,
            default=100,
            help='Number of comments to create'
        )
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding'
        )

    def handle(self, *args, **options):
        store = DjangoRecordStore()

        if options['clear']:
            self.stdout.write('Clearing existing data...')
            CommentReaction.objects.all().delete()
            ConfessionReaction.objects.all().delete()
            ConfessionComment.objects.all().delete()
            Confession.objects.all().delete()
            AnonymousIdentity.objects.all().delete()

        self.stdout.write('Resolving anonymous devices...')
        voters = self._resolve_devices(store, options['devices'])

        self.stdout.write('Creating confessions...')
        confessions = self._create_confessions(store, voters, options['confessions'])

        self.stdout.write('Creating comments...')
        comments = self._create_comments(store, voters, confessions, options['comments'])

        self.stdout.write('Creating reactions...')
        reaction_count = self._create_reactions(store, voters, confessions, comments)

        self.stdout.write(self.style.SUCCESS(
            f'Successfully created:\n'
            f'  - {len(voters)} anonymous devices\n'
            f'  - {len(confessions)} confessions\n'
            f'  - {len(comments)} comments\n'
            f'  - {reaction_count} reactions'
        ))

    def _resolve_devices(self, store, count):
        voters = []
        for i in range(count):
            fingerprint = DeviceFingerprint(
                user_agent=f'SeedBrowser/{i + 1}.0',
                language='en-US',
                platform='seed',
                screen_resolution='1920x1080',
                timezone='UTC',
                canvas=f'seed-canvas-{i + 1}',
            )
            resolver = IdentityResolver(store, SessionDeviceCache(SessionStore()), fingerprint)
            voters.append(resolver.resolve().id)
        return voters

    def _create_confessions(self, store, voters, count):
        confessions = []
        contents = [
            "I still haven't told anyone that I failed my driving test three times.",
            "Sometimes I pretend to be on a call so I don't have to talk to people.",
            "I ate my roommate's leftovers and blamed the cat.",
            "I secretly love pineapple on pizza and I'm tired of hiding it.",
            "I reread the same book every winter and never tell anyone.",
        ]

        media_store = StorageMediaStore()
        for i in range(count):
            confession = create_confession(
                store,
                media_store,
                random.choice(voters),
                content=f"{random.choice(contents)} #{i + 1}",
            )
            confessions.append(confession)
        return confessions

    def _create_comments(self, store, voters, confessions, count):
        comments = []
        comment_texts = [
            "Same here, honestly.",
            "This is so relatable.",
            "No way, really?",
            "Thanks for sharing this.",
            "I needed to hear this today.",
            "Bold of you to admit that.",
        ]

        for _ in range(count):
            confession = random.choice(confessions)

            # 30% chance of being a reply to an existing top-level comment
            parent_id = None
            existing = [
                c for c in comments
                if c['confession_id'] == confession['id'] and c['parent_comment_id'] is None
            ]
            if existing and random.random() < 0.3:
                parent_id = random.choice(existing)['id']

            comment = create_comment(
                store,
                confession['id'],
                random.choice(voters),
                random.choice(comment_texts),
                parent_id,
            )
            comments.append(comment)

        return comments

    def _create_reactions(self, store, voters, confessions, comments):
        coordinator = ReactionCoordinator(store)
        created = 0

        # Half the devices react to each confession, mostly likes
        for confession in confessions:
            for voter in random.sample(voters, k=len(voters) // 2):
                coordinator.apply_reaction('confession', confession['id'], voter, random.random() < 0.75)
                created += 1

        # 30% of comments get a few reactions
        for comment in comments:
            if random.random() < 0.3:
                for voter in random.sample(voters, k=min(3, len(voters))):
                    coordinator.apply_reaction('comment', comment['id'], voter, random.random() < 0.75)
                    created += 1

        return created
