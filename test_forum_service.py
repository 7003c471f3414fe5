import tempfile
import threading
import unittest
from pathlib import Path

from localmolt.errors import Conflict, Forbidden, InvalidOperation, NotFound, Unauthenticated, ValidationError
from localmolt.forum_config import ForumConfig
from localmolt.forum_service import ForumService


class TestForumService(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        db_path = str(Path(self.temp_dir.name) / "forum_test.db")
        self.service = ForumService(ForumConfig(db_path=db_path))
        for name in ("alice", "bob", "carol", "dave"):
            self.service.register_agent(name, agent_id=name)

    def tearDown(self):
        self.service.close()
        self.temp_dir.cleanup()

    def test_reply_discharges_mention_and_updates_thread(self):
        root = self.service.create_root_post("alice", "@bob please review", submolt_id="decisions", title="Review")
        thread = self.service.get_thread(root.id)
        self.assertEqual(thread.id, f"thr_{root.id}")
        self.assertEqual(thread.reply_count, 0)
        self.assertEqual(thread.participant_count, 1)
        pending = self.service.list_unresponded("bob")
        self.assertEqual([m.post_id for m in pending], [root.id])

        reply = self.service.create_reply(root.id, "bob", "LGTM")

        self.assertEqual(self.service.list_unresponded("bob"), [])
        mention = self.service.list_mentions("bob", responded=True)[0]
        self.assertEqual(mention.response_post_id, reply.id)
        thread = self.service.get_thread(root.id)
        self.assertEqual(thread.reply_count, 1)
        self.assertEqual(thread.participant_count, 2)
        self.assertEqual(thread.last_activity, reply.created_at)
        alice_inbox = self.service.list_notifications("alice")
        self.assertIn(("reply", "bob"), [(n.type, n.source_agent_id) for n in alice_inbox])
        bob_inbox = self.service.list_notifications("bob")
        self.assertEqual([n.type for n in bob_inbox], ["mention"])

    def test_returning_participant_does_not_grow_participant_count(self):
        root = self.service.create_root_post("alice", "root")
        reply = self.service.create_reply(root.id, "bob", "first")
        self.service.create_reply(reply.id, "alice", "back to you")
        thread = self.service.get_thread(root.id)
        self.assertEqual(thread.reply_count, 2)
        self.assertEqual(thread.participant_count, 2)

    def test_deep_reply_resolves_mention_on_ancestor(self):
        root = self.service.create_root_post("alice", "asking @carol")
        middle = self.service.create_reply(root.id, "bob", "I think so too")
        deep = self.service.create_reply(middle.id, "carol", "answering here")
        self.assertEqual(deep.depth, 2)
        self.assertEqual(self.service.list_unresponded("carol"), [])
        self.assertEqual(self.service.get_thread(root.id).participant_count, 3)

    def test_reply_on_sibling_branch_leaves_mention_open(self):
        root = self.service.create_root_post("alice", "root")
        branch = self.service.create_reply(root.id, "bob", "what does @carol think?")
        self.service.create_reply(root.id, "carol", "replying to the root instead")
        pending = self.service.list_unresponded("carol")
        self.assertEqual([m.post_id for m in pending], [branch.id])

    def test_mentions_ignore_self_and_unknown_handles(self):
        root = self.service.create_root_post("alice", "@alice @nobody @BOB @bob")
        self.assertEqual(self.service.list_unresponded("alice"), [])
        self.assertEqual(len(self.service.list_unresponded("bob")), 1)
        self.assertEqual(self.service.mentions.for_post(root.id)[0].mentioning_agent_id, "alice")

    def test_title_mentions_create_obligations(self):
        self.service.create_root_post("alice", "body without handles", title="cc @dave")
        self.assertEqual(len(self.service.list_unresponded("dave")), 1)

    def test_vote_transitions(self):
        root = self.service.create_root_post("alice", "vote on me")
        first = self.service.upvote(root.id, "carol")
        self.assertTrue(first.changed)
        again = self.service.upvote(root.id, "carol")
        self.assertFalse(again.changed)
        self.assertEqual(again.message, "Already voted")
        self.assertEqual((again.post.upvotes, again.post.downvotes), (1, 0))

        flipped = self.service.downvote(root.id, "carol")
        self.assertEqual((flipped.post.upvotes, flipped.post.downvotes), (0, 1))
        self.assertEqual(flipped.vote, -1)

        removed = self.service.remove_vote(root.id, "carol")
        self.assertEqual((removed.post.upvotes, removed.post.downvotes), (0, 0))
        self.assertIsNone(removed.vote)
        noop = self.service.remove_vote(root.id, "carol")
        self.assertFalse(noop.changed)
        self.assertEqual(noop.message, "No vote to remove")

    def test_vote_errors(self):
        root = self.service.create_root_post("alice", "vote on me")
        with self.assertRaises(Unauthenticated):
            self.service.upvote(root.id, None)
        with self.assertRaises(ValidationError):
            self.service.apply_vote(root.id, "carol", 2)
        with self.assertRaises(NotFound):
            self.service.upvote("missing", "carol")

    def test_concurrent_replies_keep_thread_counters_exact(self):
        root = self.service.create_root_post("alice", "root")
        agents = [f"worker-{index}" for index in range(7)]
        errors = []

        def reply(agent_id, count):
            parent_id = root.id
            try:
                for index in range(count):
                    parent_id = self.service.create_reply(parent_id, agent_id, f"reply {index}").id
            except Exception as exc:
                errors.append(exc)

        workers = [threading.Thread(target=reply, args=(agent_id, 4 if index < 5 else 10)) for index, agent_id in enumerate(agents)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.assertEqual(errors, [])
        thread = self.service.get_thread(root.id)
        self.assertEqual(thread.reply_count, 40)
        self.assertEqual(thread.participant_count, len(agents) + 1)
        recomputed = self.service.threads.recompute(root.id)
        self.assertEqual((recomputed.reply_count, recomputed.participant_count), (40, 8))

    def test_lock_blocks_replies_until_reopened(self):
        root = self.service.create_root_post("alice", "root")
        reply = self.service.create_reply(root.id, "bob", "reply")
        locked = self.service.lock_thread("alice", root.id)
        self.assertTrue(locked.changed)
        self.assertTrue(locked.thread.locked)
        self.assertEqual(locked.thread.status, "locked")
        with self.assertRaises(Forbidden):
            self.service.create_reply(reply.id, "carol", "too late")
        self.assertEqual(self.service.get_thread(root.id).reply_count, 1)

        reopened = self.service.reopen_thread("alice", root.id)
        self.assertFalse(reopened.thread.locked)
        self.service.create_reply(reply.id, "carol", "now it works")
        self.assertEqual(self.service.get_thread(root.id).reply_count, 2)

    def test_thread_moderation_requires_an_agent(self):
        root = self.service.create_root_post("alice", "root")
        thread_id = f"thr_{root.id}"
        for call in (
            lambda: self.service.lock_thread(None, root.id),
            lambda: self.service.resolve_thread("", root.id),
            lambda: self.service.reopen_thread(None, root.id),
            lambda: self.service.pin_thread(None, thread_id),
            lambda: self.service.unpin_thread(None, thread_id),
        ):
            with self.assertRaises(Unauthenticated):
                call()
        thread = self.service.get_thread(root.id)
        self.assertEqual((thread.status, thread.pinned), ("open", False))
        self.assertTrue(self.service.pin_thread("bob", thread_id).pinned)
        self.assertFalse(self.service.unpin_thread("bob", thread_id).pinned)

    def test_state_changes_require_root_and_legal_transition(self):
        root = self.service.create_root_post("alice", "root")
        reply = self.service.create_reply(root.id, "bob", "reply")
        with self.assertRaises(InvalidOperation):
            self.service.lock_thread("alice", reply.id)
        already_open = self.service.reopen_thread("alice", root.id)
        self.assertFalse(already_open.changed)
        self.assertEqual(already_open.thread.status, "open")
        resolved = self.service.resolve_thread("alice", root.id)
        self.assertEqual(resolved.thread.status, "resolved")
        self.assertFalse(self.service.resolve_thread("bob", root.id).changed)
        with self.assertRaises(InvalidOperation):
            self.service.lock_thread("alice", root.id)
        actions = [entry["action"] for entry in self.service.timeline(actions=["resolve", "reopen"])]
        self.assertEqual(actions, ["resolve"])
        self.service.create_reply(root.id, "carol", "resolved threads still accept replies")

    def test_acknowledge_mention(self):
        root = self.service.create_root_post("alice", "ping @bob")
        mention = self.service.list_unresponded("bob")[0]
        with self.assertRaises(Forbidden):
            self.service.acknowledge_mention("carol", "bob", mention.id)
        with self.assertRaises(NotFound):
            self.service.acknowledge_mention("carol", "carol", mention.id)

        first = self.service.acknowledge_mention("bob", "bob", mention.id)
        self.assertFalse(first.already_responded)
        self.assertTrue(first.mention.responded)
        second = self.service.acknowledge_mention("bob", "bob", mention.id)
        self.assertTrue(second.already_responded)

        self.service.create_reply(root.id, "bob", "late reply")
        self.assertIsNone(self.service.mentions.get(mention.id).response_post_id)

    def test_acknowledge_all_mentions(self):
        self.service.create_root_post("alice", "ping @bob")
        self.service.create_root_post("carol", "also @bob")
        acknowledged = self.service.acknowledge_mentions("bob", "bob", all_mentions=True)
        self.assertEqual(acknowledged.count, 2)
        self.assertEqual(acknowledged.not_found, [])
        self.assertEqual(self.service.list_unresponded("bob"), [])
        with self.assertRaises(ValidationError):
            self.service.acknowledge_mentions("bob", "bob")

    def test_subscriptions_fan_out(self):
        sub = self.service.subscribe("dave", "submolt", "errors")
        self.assertTrue(sub.changed)
        self.assertFalse(self.service.subscribe("dave", "submolt", "errors").changed)
        root = self.service.create_root_post("alice", "stack trace", submolt_id="errors")
        self.service.subscribe("dave", "post", root.id)
        self.service.create_reply(root.id, "bob", "seen this before")
        self.service.create_reply(root.id, "dave", "my own reply")

        types = sorted(n.type for n in self.service.list_notifications("dave"))
        self.assertEqual(types, ["new_post", "reply"])
        self.assertEqual(self.service.unread_count("dave"), 2)
        self.assertEqual(self.service.mark_read("dave"), 2)
        self.assertEqual(self.service.delete_read_notifications("dave"), 2)
        self.assertEqual(self.service.list_notifications("dave"), [])

        with self.assertRaises(NotFound):
            self.service.subscribe("dave", "post", "missing")
        with self.assertRaises(ValidationError):
            self.service.subscribe("dave", "agent", "alice")

    def test_subscriber_who_authored_parent_is_notified_once(self):
        root = self.service.create_root_post("alice", "root")
        self.service.subscribe("alice", "post", root.id)
        self.service.create_reply(root.id, "bob", "reply")
        self.assertEqual(len(self.service.list_notifications("alice")), 1)

    def test_watchlist_ownership_and_conflicts(self):
        root = self.service.create_root_post("alice", "root")
        entry = self.service.upsert_watchlist("bob", "bob", "thread", root.id, priority=3, starred=True)
        self.assertTrue(entry.starred)
        with self.assertRaises(Conflict):
            self.service.upsert_watchlist("bob", "bob", "thread", root.id)
        with self.assertRaises(Forbidden):
            self.service.upsert_watchlist("carol", "bob", "agent", "alice")
        with self.assertRaises(Unauthenticated):
            self.service.upsert_watchlist(None, "bob", "agent", "alice")
        with self.assertRaises(NotFound):
            self.service.upsert_watchlist("bob", "bob", "agent", "nobody")

        updated = self.service.update_watchlist("bob", "bob", entry.id, priority=9)
        self.assertEqual(updated.priority, 9)
        with self.assertRaises(ValidationError):
            self.service.update_watchlist("bob", "bob", entry.id)
        self.service.remove_watchlist("bob", "bob", entry.id)
        self.assertEqual(self.service.list_watchlist("bob"), [])

    def test_links(self):
        first = self.service.create_root_post("alice", "first")
        second = self.service.create_root_post("bob", "second")
        link = self.service.create_link(second.id, first.id, "builds-on", "bob")
        self.assertEqual(link.link_type, "builds-on")
        with self.assertRaises(Conflict):
            self.service.create_link(second.id, first.id, "builds-on", "bob")
        with self.assertRaises(ValidationError):
            self.service.create_link(second.id, first.id, "likes", "bob")

        related = self.service.related_posts(first.id)
        self.assertEqual([l.source_id for l in related["incoming"]], [second.id])
        self.assertIn("link", [n.type for n in self.service.list_notifications("alice")])
        with self.assertRaises(Unauthenticated):
            self.service.remove_link(None, second.id, first.id)
        self.assertEqual(self.service.remove_link("bob", second.id, first.id), 1)
        with self.assertRaises(NotFound):
            self.service.remove_link("bob", second.id, first.id)

    def test_fork_creates_new_thread(self):
        original = self.service.create_root_post("alice", "original idea", title="Idea")
        fork = self.service.fork_post(original.id, "bob")
        self.assertEqual(fork.forked_from, original.id)
        self.assertEqual(fork.title, "Fork: Idea")
        self.assertTrue(fork.is_root)
        self.assertEqual(self.service.get_thread(fork.id).reply_count, 0)
        detail = self.service.get_post_detail(original.id)
        self.assertEqual([p.id for p in detail["forks"]], [fork.id])

    def test_post_detail_lists_mentions(self):
        root = self.service.create_root_post("alice", "@bob and @carol, thoughts?")
        detail = self.service.get_post_detail(root.id)
        self.assertEqual(sorted(m.mentioned_agent_id for m in detail["mentions"]), ["bob", "carol"])
        reply = self.service.create_reply(root.id, "bob", "no mentions here")
        self.assertEqual(self.service.get_post_detail(reply.id)["mentions"], [])

    def test_thread_detail(self):
        root = self.service.create_root_post("alice", "root")
        reply = self.service.create_reply(root.id, "bob", "reply")
        nested = self.service.create_reply(reply.id, "carol", "nested")
        detail = self.service.get_thread_detail(f"thr_{root.id}")
        self.assertEqual(detail["root"].id, root.id)
        self.assertEqual([p.id for p in detail["replies"]], [reply.id, nested.id])
        self.assertEqual([a.id for a in detail["participants"]], ["alice", "bob", "carol"])

    def test_recount_repairs_drifted_counters(self):
        root = self.service.create_root_post("alice", "root")
        self.service.create_reply(root.id, "bob", "reply")
        self.service.upvote(root.id, "carol")
        self.service.db.execute("UPDATE threads SET reply_count = 42, participant_count = 9")
        self.service.db.execute("UPDATE posts SET upvotes = 7, downvotes = 3")

        with self.assertRaises(Unauthenticated):
            self.service.recount_all(None)
        counts = self.service.recount_all("dave")
        self.assertEqual(counts["threads"], 1)
        thread = self.service.get_thread(root.id)
        self.assertEqual((thread.reply_count, thread.participant_count), (1, 2))
        post = self.service.get_post(root.id)
        self.assertEqual((post.upvotes, post.downvotes), (1, 0))

    def test_failed_reply_rolls_back(self):
        root = self.service.create_root_post("alice", "root")
        with self.assertRaises(ValidationError):
            self.service.create_reply(root.id, "bob", "   ")
        with self.assertRaises(NotFound):
            self.service.create_reply("missing", "bob", "hello")
        self.assertEqual(self.service.get_thread(root.id).reply_count, 0)
        self.assertEqual(self.service.posts.get_subtree(root.id), [])

    def test_unknown_agents_are_registered_on_first_write(self):
        root = self.service.create_root_post("newcomer", "hello")
        self.assertEqual(self.service.get_agent("newcomer").name, "newcomer")
        self.assertEqual(root.submolt_id, "decisions")
        with self.assertRaises(NotFound):
            self.service.create_root_post("alice", "hello", submolt_id="nowhere")

    def test_timeline_records_writes(self):
        root = self.service.create_root_post("alice", "root")
        self.service.create_reply(root.id, "bob", "reply")
        self.service.upvote(root.id, "carol")
        actions = [entry["action"] for entry in self.service.timeline()]
        self.assertEqual(actions, ["upvote", "reply", "post"])
        only_bob = self.service.timeline(agent_id="bob")
        self.assertEqual(len(only_bob), 1)


if __name__ == "__main__":
    unittest.main()
