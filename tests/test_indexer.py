#!/usr/bin/env python3
"""
Tests for the indexer state machine: backfill, live event handling and replay
"""

import asyncio
import json

from conftest import BIDDER_ABC, BIDDER_DEF, GATEWAY, FakeResponse, RecordingChannel
from indexer.chain_client import ChainUnavailable, SubscriptionLost
from indexer.indexer import AuctionIndexer, IndexerState


class TestBackfill:

    async def test_end_to_end_backfill_then_live_bid(self, indexer, chain, store, make_state, make_event):
        """Two existing auctions, then one live BidPlaced on auction 0"""
        chain.states = {
            0: make_state(0, ended=False, highest_bid=0),
            1: make_state(1, ended=True, highest_bidder=BIDDER_ABC, highest_bid=500),
        }

        assert await indexer.connect()
        report = await indexer.backfill()

        assert (report.total, report.indexed, report.failed) == (2, 2, [])
        auctions, total = await store.list_auctions()
        assert total == 2
        by_id = {item["id"]: item for item in auctions}
        assert by_id[0]["ended"] is False
        assert by_id[0]["highest_bid"] == "0"
        assert by_id[1]["ended"] is True
        assert by_id[1]["highest_bidder"] == BIDDER_ABC
        assert by_id[1]["highest_bid"] == "500"
        # Backfill never synthesises history
        assert (await store.list_events())[1] == 0
        assert sum(item["bid_count"] for item in auctions) == 0

        await indexer.go_live()
        assert indexer.state == IndexerState.LIVE

        chain.states[0] = make_state(0, highest_bidder=BIDDER_DEF, highest_bid=700)
        await chain.emit(make_event("BidPlaced", auctionId=0, bidder=BIDDER_DEF, amount=700))

        events, event_total = await store.list_events()
        assert event_total == 1
        assert events[0]["name"] == "BidPlaced"
        auction = await store.get_auction(0)
        assert auction["bid_count"] == 1
        assert auction["bids"][0]["bidder"] == BIDDER_DEF
        assert auction["highest_bidder"] == BIDDER_DEF
        assert auction["highest_bid"] == "700"

    async def test_per_auction_failure_does_not_abort(self, indexer, chain, make_state, store):
        chain.states = {i: make_state(i) for i in range(4)}
        chain.failing_ids = {2}

        await indexer.connect()
        report = await indexer.backfill()

        assert report.indexed == 3
        assert report.failed == [2]
        assert await store.get_auction(2) is None
        assert await store.get_auction(3) is not None

    async def test_count_failure_yields_empty_report(self, indexer, chain):
        chain.count_error = ChainUnavailable("node down")
        await indexer.connect()

        report = await indexer.backfill()

        assert report.total == 0
        assert indexer.last_error == "node down"

    async def test_metadata_enrichment_and_failure(self, indexer, chain, fake_session, make_state, store):
        """A failed metadata fetch leaves title empty but still stores the auction"""
        chain.states = {
            0: make_state(0, metadata_id="QmGood"),
            1: make_state(1, metadata_id="QmSlow"),
        }
        fake_session.add("QmGood", FakeResponse(200, {"name": "Vase", "image": "ipfs://img"}))
        fake_session.add("QmSlow", asyncio.TimeoutError())

        await indexer.connect()
        await indexer.backfill()

        assert (await store.get_auction(0))["title"] == "Vase"
        slow = await store.get_auction(1)
        assert slow is not None
        assert slow["title"] is None
        assert f"{GATEWAY}/QmSlow" in fake_session.calls

    async def test_connect_failure_disables_indexing(self, indexer, chain):
        chain.connect_error = ChainUnavailable("connection refused")

        await indexer.run()

        assert indexer.state == IndexerState.DISABLED
        assert chain.reads == []
        assert chain.subscribed_from is None


class TestLiveEvents:

    async def test_state_comes_from_reread_not_payload(self, indexer, chain, make_state, make_event, store):
        """A stale event payload never overrides the canonical read"""
        chain.states = {0: make_state(0)}
        await indexer.connect()
        await indexer.backfill()
        await indexer.go_live()

        chain.states[0] = make_state(0, highest_bidder=BIDDER_DEF, highest_bid=700)
        await chain.emit(make_event("BidPlaced", auctionId=0, bidder=BIDDER_ABC, amount=650))

        auction = await store.get_auction(0)
        assert auction["highest_bid"] == "700"
        assert auction["highest_bidder"] == BIDDER_DEF
        # The bid log still records what the event said
        assert auction["bids"][0]["amount"] == "650"

    async def test_broadcasts_refreshed_snapshot(self, indexer, chain, hub, make_state, make_event):
        chain.states = {0: make_state(0, ended=True, highest_bid=900, highest_bidder=BIDDER_ABC)}
        channel = RecordingChannel()
        hub.register(channel)
        await indexer.connect()
        await indexer.go_live()

        await chain.emit(make_event("AuctionEnded", auctionId=0, winner=BIDDER_ABC, amount=900))

        frame = json.loads(channel.messages[0])
        assert frame["type"] == "AuctionEnded"
        assert frame["auctionId"] == 0
        assert frame["data"]["ended"] is True
        assert frame["data"]["status"] == "ended"

    async def test_non_bid_event_records_no_bid(self, indexer, chain, make_state, make_event, store):
        chain.states = {0: make_state(0, end_time=2_300)}
        await indexer.connect()
        await indexer.go_live()

        await chain.emit(make_event("AuctionExtended", auctionId=0, newEndTime=2_300))

        auction = await store.get_auction(0)
        assert auction["bid_count"] == 0
        assert auction["end_time"] == 2_300
        assert (await store.list_events())[1] == 1

    async def test_bid_for_unseen_auction_is_stored(self, indexer, chain, make_state, make_event, store):
        """Auction row is created from a canonical read before its first bid"""
        chain.states = {5: make_state(5, highest_bidder=BIDDER_DEF, highest_bid=10)}
        await indexer.connect()
        await indexer.go_live()

        await chain.emit(make_event("BidPlaced", auctionId=5, bidder=BIDDER_DEF, amount=10))

        auction = await store.get_auction(5)
        assert auction["bid_count"] == 1
        assert auction["highest_bid"] == "10"

    async def test_handler_errors_are_swallowed(self, indexer, chain, make_event, store):
        """A failing re-read keeps the tail alive and the event row is kept"""
        await indexer.connect()
        await indexer.go_live()

        await chain.emit(make_event("AuctionExtended", auctionId=42, newEndTime=1))

        assert indexer.state == IndexerState.LIVE
        assert (await store.list_events())[1] == 1
        assert await store.get_auction(42) is None

    async def test_duplicate_delivery_is_harmless(self, indexer, chain, make_state, make_event, store):
        chain.states = {0: make_state(0, highest_bid=700, highest_bidder=BIDDER_DEF)}
        await indexer.connect()
        await indexer.go_live()
        event = make_event("BidPlaced", auctionId=0, bidder=BIDDER_DEF, amount=700)

        await chain.emit(event)
        await chain.emit(event)

        assert (await store.get_auction(0))["bid_count"] == 1
        assert (await store.list_events())[1] == 1

    async def test_callbacks_registered_for_every_event_type(self, indexer, chain, variant):
        await indexer.connect()
        await indexer.go_live()
        await indexer.go_live()

        assert set(chain.callbacks) == set(variant.events)
        assert all(len(callbacks) == 1 for callbacks in chain.callbacks.values())


class TestLiveStartBlock:

    async def test_starts_after_head_seen_at_connect(self, indexer, chain):
        chain.head = 250
        await indexer.connect()
        chain.head = 260  # blocks produced during backfill

        await indexer.go_live()

        assert chain.subscribed_from == 251

    async def test_resumes_from_checkpoint(self, indexer, chain, store):
        await store.set_last_indexed_block(indexer.checkpoint_key, 180)
        await indexer.connect()

        await indexer.go_live()

        assert chain.subscribed_from == 181

    async def test_subscription_lost_degrades(self, indexer, chain):
        chain.subscribe_error = SubscriptionLost("gave up after 5 attempts")
        await indexer.connect()

        await indexer.go_live()

        assert indexer.state == IndexerState.DEGRADED
        assert "gave up" in indexer.last_error

    async def test_checkpoint_writes_store(self, indexer, store):
        await indexer._checkpoint(321)
        assert await store.get_last_indexed_block(indexer.checkpoint_key) == 321


class TestReplayHistory:

    async def test_replay_writes_side_logs_and_skips_failed_types(self, indexer, chain, make_state, make_event, store):
        chain.states = {0: make_state(0)}
        await store.upsert_auction(make_state(0))
        chain.history = {
            "BidPlaced": [
                make_event("BidPlaced", block_number=12, auctionId=0, bidder=BIDDER_DEF, amount=20),
                make_event("BidPlaced", block_number=11, auctionId=0, bidder=BIDDER_ABC, amount=10),
            ],
            "AuctionCreated": [make_event("AuctionCreated", block_number=10, auctionId=0, seller=BIDDER_ABC)],
        }
        chain.failing_event_types = {"AuctionEnded"}

        report = await indexer.replay_history(0, 50)

        assert report.events == 3
        assert report.bids == 2
        assert report.failed_types == ["AuctionEnded"]
        auction = await store.get_auction(0)
        # Newest first, so chain order is reversed
        assert [bid["amount"] for bid in auction["bids"]] == ["20", "10"]

        again = await indexer.replay_history(0, 50)
        assert again.bids == 0
        assert (await store.list_events())[1] == 3

    async def test_replay_defaults_to_head(self, indexer, chain):
        chain.head = 77
        report = await indexer.replay_history()
        assert (report.from_block, report.to_block) == (0, 77)


class TestLifecycle:

    async def test_run_goes_through_every_state(self, chain, store, metadata, hub, make_state):
        seen = []

        class TracingIndexer(AuctionIndexer):
            async def backfill(self):
                seen.append(self.state)
                report = await super().backfill()
                seen.append(self.state)
                return report

        chain.states = {0: make_state(0)}
        indexer = TracingIndexer(chain, store, metadata, hub, backfill_delay=0)

        await indexer.run()

        assert seen == [IndexerState.CONNECTING, IndexerState.BACKFILLING]
        assert indexer.state == IndexerState.LIVE
        assert chain.subscribed_from == chain.head + 1

    async def test_close_releases_resources(self, indexer, chain):
        await indexer.close()
        assert chain.stopped
        assert chain.closed

    async def test_status(self, indexer, chain):
        await indexer.connect()
        status = indexer.status()
        assert status["state"] == "connecting"
        assert status["variant"] == "simple"
        assert status["head_at_connect"] == chain.head
