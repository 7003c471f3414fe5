import tempfile
import unittest
from pathlib import Path

from localmolt.errors import NotFound, ValidationError
from localmolt.feed import FeedSnapshot, rank_feed
from localmolt.forum_config import ForumConfig
from localmolt.forum_service import ForumService
from localmolt.integration.schemas import Mention, Post, Subscription, Thread, WatchlistEntry


def make_post(post_id, agent_id, created_at, upvotes=0, downvotes=0, parent=None, submolt="decisions", content="text"):
    root_id = parent.root_id if parent else post_id
    path = f"{parent.path}{post_id}/" if parent else f"/{post_id}/"
    return Post(
        id=post_id,
        submolt_id=submolt,
        agent_id=agent_id,
        parent_id=parent.id if parent else None,
        root_id=root_id,
        depth=parent.depth + 1 if parent else 0,
        path=path,
        content=content,
        upvotes=upvotes,
        downvotes=downvotes,
        created_at=created_at,
        updated_at=created_at,
    )


def make_entry(entry_id, target_type, target_id, priority=0, starred=False):
    return WatchlistEntry(
        id=entry_id,
        agent_id="me",
        target_type=target_type,
        target_id=target_id,
        priority=priority,
        starred=starred,
        created_at="2026-01-01T00:00:00+00:00",
    )


def make_thread(root, last_activity):
    return Thread(
        id=f"thr_{root.id}",
        root_post_id=root.id,
        submolt_id=root.submolt_id,
        last_activity=last_activity,
        created_at=root.created_at,
    )


class TestRankFeed(unittest.TestCase):
    def test_item_reachable_twice_keeps_best_score(self):
        root = make_post("r1", "other", "2026-01-01T10:00:00+00:00", upvotes=4)
        snapshot = FeedSnapshot(
            agent_id="me",
            posts={root.id: root},
            threads={root.id: make_thread(root, "2026-01-01T11:00:00+00:00")},
            watchlist=(make_entry("w1", "thread", "thr_r1", priority=5, starred=True),),
        )
        feed = rank_feed(snapshot, limit=10)
        self.assertEqual(len(feed), 1)
        self.assertEqual(feed[0].reason, "starred_watchlist")
        self.assertEqual(feed[0].priority_score, 100 + 5 + 4 * 5)
        self.assertEqual(feed[0].activity_at, "2026-01-01T11:00:00+00:00")
        self.assertEqual(feed[0].watchlist_id, "w1")

    def test_tiers_order_unvoted_items(self):
        mentioned = make_post("m1", "a", "2026-01-01T09:00:00+00:00")
        reply_parent = make_post("p1", "me", "2026-01-01T08:00:00+00:00")
        reply = make_post("c1", "b", "2026-01-01T12:00:00+00:00", parent=reply_parent)
        nearby = make_post("n1", "c", "2026-01-01T13:00:00+00:00")
        snapshot = FeedSnapshot(
            agent_id="me",
            posts={p.id: p for p in (mentioned, reply_parent, reply, nearby)},
            unresponded=(
                Mention(id="x1", post_id="m1", mentioned_agent_id="me", created_at="2026-01-01T09:00:00+00:00"),
            ),
            parent_authors={"c1": "me"},
            caller_submolts=frozenset({"decisions"}),
        )
        feed = rank_feed(snapshot, limit=10)
        self.assertEqual(
            [(item.post.id, item.reason, item.priority_score) for item in feed],
            [("m1", "unresponded_mention", 90), ("c1", "reply_to_you", 60), ("n1", "submolt_activity", 30)],
        )
        self.assertEqual(feed[0].mention_id, "x1")

    def test_recency_breaks_score_ties(self):
        older = make_post("t1", "a", "2026-01-01T10:00:00+00:00", upvotes=3)
        newer = make_post("t2", "b", "2026-01-02T10:00:00+00:00", upvotes=3)
        snapshot = FeedSnapshot(agent_id="me", posts={older.id: older, newer.id: newer})
        feed = rank_feed(snapshot, limit=10)
        self.assertEqual([item.post.id for item in feed], ["t2", "t1"])
        self.assertEqual({item.reason for item in feed}, {"trending"})

    def test_trending_threshold_and_own_posts(self):
        mine = make_post("t1", "me", "2026-01-01T10:00:00+00:00", upvotes=5)
        weak = make_post("t2", "b", "2026-01-01T10:00:00+00:00", upvotes=3, downvotes=1)
        snapshot = FeedSnapshot(agent_id="me", posts={mine.id: mine, weak.id: weak})
        self.assertEqual([item.post.id for item in rank_feed(snapshot, limit=10)], ["t1"])

    def test_limit_truncates(self):
        posts = {
            f"t{i}": make_post(f"t{i}", "a", f"2026-01-0{i}T10:00:00+00:00", upvotes=3 + i) for i in range(1, 6)
        }
        snapshot = FeedSnapshot(agent_id="me", posts=posts)
        feed = rank_feed(snapshot, limit=2)
        self.assertEqual([item.post.id for item in feed], ["t5", "t4"])
        self.assertEqual(rank_feed(snapshot, limit=0), [])

    def test_upvotes_by_watched_agents_skip_own_posts(self):
        theirs = make_post("u1", "other", "2026-01-01T10:00:00+00:00", upvotes=1)
        mine = make_post("u2", "me", "2026-01-01T10:00:00+00:00", upvotes=1)
        snapshot = FeedSnapshot(
            agent_id="me",
            posts={theirs.id: theirs, mine.id: mine},
            watchlist=(make_entry("w1", "agent", "friend"),),
            watched_upvotes={"u1": ("friend",), "u2": ("friend",)},
        )
        feed = rank_feed(snapshot, limit=10)
        self.assertEqual([(item.post.id, item.reason) for item in feed], [("u1", "upvoted_by_watched")])
        self.assertEqual(feed[0].upvoted_by, ["friend"])
        self.assertEqual(feed[0].priority_score, 85 + 5)

    def test_starred_agent_activity_uses_entry_priority(self):
        post = make_post("s1", "star", "2026-01-01T10:00:00+00:00")
        snapshot = FeedSnapshot(
            agent_id="me",
            posts={post.id: post},
            watchlist=(make_entry("w1", "agent", "star", priority=7, starred=True),),
        )
        feed = rank_feed(snapshot, limit=10)
        self.assertEqual((feed[0].reason, feed[0].priority_score), ("starred_agent_activity", 102))

    def test_since_filters_old_activity(self):
        old = make_post("o1", "a", "2026-01-01T10:00:00+00:00", upvotes=3)
        fresh = make_post("f1", "a", "2026-01-03T10:00:00+00:00", upvotes=3)
        snapshot = FeedSnapshot(
            agent_id="me",
            since="2026-01-02T00:00:00+00:00",
            posts={old.id: old, fresh.id: fresh},
        )
        self.assertEqual([item.post.id for item in rank_feed(snapshot, limit=10)], ["f1"])

    def test_post_subscription_covers_subtree(self):
        root = make_post("r1", "a", "2026-01-01T10:00:00+00:00")
        child = make_post("c1", "b", "2026-01-01T11:00:00+00:00", parent=root)
        grandchild = make_post("g1", "c", "2026-01-01T12:00:00+00:00", parent=child)
        snapshot = FeedSnapshot(
            agent_id="me",
            posts={p.id: p for p in (root, child, grandchild)},
            subscriptions=(
                Subscription(id="s1", agent_id="me", target_type="post", target_id="r1", created_at=root.created_at),
            ),
        )
        feed = rank_feed(snapshot, limit=10)
        self.assertEqual([item.post.id for item in feed], ["g1", "c1"])
        self.assertTrue(all(item.reason == "subscription" for item in feed))

    def test_text_mention_requires_exact_handle(self):
        exact = make_post("e1", "a", "2026-01-01T10:00:00+00:00", content="hey @me look")
        longer = make_post("e2", "a", "2026-01-01T10:00:00+00:00", content="hey @meadow look")
        snapshot = FeedSnapshot(agent_id="me", posts={exact.id: exact, longer.id: longer})
        self.assertEqual([item.post.id for item in rank_feed(snapshot, limit=10)], ["e1"])


class TestComputeFeed(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        db_path = str(Path(self.temp_dir.name) / "feed_test.db")
        self.service = ForumService(ForumConfig(db_path=db_path))
        for name in ("alice", "bob", "carol"):
            self.service.register_agent(name, agent_id=name)

    def tearDown(self):
        self.service.close()
        self.temp_dir.cleanup()

    def test_unresponded_mention_outranks_trending(self):
        asked = self.service.create_root_post("alice", "@bob can you check?")
        popular = self.service.create_root_post("carol", "popular post")
        for voter in ("alice", "x1", "x2"):
            self.service.upvote(popular.id, voter)

        result = self.service.compute_feed("bob")
        reasons = {item.post.id: (item.reason, item.priority_score) for item in result.feed}
        self.assertEqual(reasons[asked.id], ("unresponded_mention", 90))
        self.assertEqual(reasons[popular.id], ("trending", 40 + 15))
        self.assertEqual(result.feed[0].post.id, asked.id)
        self.assertEqual(result.meta["unresponded_mentions"], 1)
        self.assertEqual(result.total_items, len(result.feed))

    def test_watched_thread_and_replies_to_caller(self):
        root = self.service.create_root_post("alice", "root")
        self.service.upsert_watchlist("bob", "bob", "thread", root.id, starred=True)
        reply = self.service.create_reply(root.id, "carol", "reply to alice")

        bob_feed = self.service.compute_feed("bob")
        self.assertEqual(bob_feed.feed[0].reason, "starred_watchlist")
        self.assertEqual(bob_feed.feed[0].activity_at, reply.created_at)

        alice_feed = self.service.compute_feed("alice")
        self.assertIn((reply.id, "reply_to_you"), [(i.post.id, i.reason) for i in alice_feed.feed])

    def test_feed_is_read_only(self):
        self.service.create_root_post("alice", "@bob hello")
        before = (self.service.unread_count("bob"), len(self.service.list_unresponded("bob")))
        self.service.compute_feed("bob")
        self.service.compute_feed("bob")
        after = (self.service.unread_count("bob"), len(self.service.list_unresponded("bob")))
        self.assertEqual(before, after)

    def test_feed_errors(self):
        with self.assertRaises(NotFound):
            self.service.compute_feed("ghost")
        with self.assertRaises(ValidationError):
            self.service.compute_feed("bob", limit=-1)


if __name__ == "__main__":
    unittest.main()
