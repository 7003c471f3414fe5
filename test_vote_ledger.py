import tempfile
import threading
import unittest
from pathlib import Path

from localmolt.directory import Directory
from localmolt.errors import ValidationError
from localmolt.forum_config import DEFAULT_SUBMOLTS
from localmolt.forum_db import ForumDB
from localmolt.post_store import PostStore
from localmolt.vote_ledger import VoteLedger


class TestVoteLedger(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db = ForumDB(str(Path(self.temp_dir.name) / "votes_test.db"))
        self.directory = Directory(self.db)
        self.directory.seed_default_submolts(DEFAULT_SUBMOLTS)
        self.voters = [f"voter-{index}" for index in range(20)]
        for agent_id in ["alice", *self.voters]:
            self.directory.ensure_agent(agent_id)
        self.post = PostStore(self.db).create_root("decisions", "alice", "vote on me")
        self.ledger = VoteLedger(self.db)

    def tearDown(self):
        self.db.close()
        self.temp_dir.cleanup()

    def test_booleans_are_not_votes(self):
        with self.assertRaises(ValidationError):
            self.ledger.apply_vote(self.post.id, "alice", True)

    def test_concurrent_votes_keep_counters_exact(self):
        def vote(agent_id, value):
            self.ledger.apply_vote(self.post.id, agent_id, value)

        workers = [
            threading.Thread(target=vote, args=(agent_id, 1 if index % 4 else -1))
            for index, agent_id in enumerate(self.voters)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        result = self.ledger.apply_vote(self.post.id, "alice", 0)
        self.assertEqual((result.post.upvotes, result.post.downvotes), (15, 5))
        recounted = self.ledger.recount(self.post.id)
        self.assertEqual((recounted.upvotes, recounted.downvotes), (15, 5))

    def test_list_voters(self):
        self.ledger.apply_vote(self.post.id, "voter-1", 1)
        self.ledger.apply_vote(self.post.id, "voter-2", -1)
        self.assertEqual([v.agent_id for v in self.ledger.list_voters(self.post.id, kind="up")], ["voter-1"])
        self.assertEqual([v.agent_id for v in self.ledger.list_voters(self.post.id, kind="down")], ["voter-2"])
        self.assertEqual(len(self.ledger.list_voters(self.post.id)), 2)
        self.assertEqual(self.ledger.get_vote(self.post.id, "voter-2").vote, -1)
        self.assertIsNone(self.ledger.get_vote(self.post.id, "alice"))
        with self.assertRaises(ValidationError):
            self.ledger.list_voters(self.post.id, kind="sideways")


if __name__ == "__main__":
    unittest.main()
