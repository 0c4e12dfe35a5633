"""
Tests for the back-reference repair sweep.
"""

import pytest
from bson import ObjectId

from library.reconciliation import ReferenceReconciler


async def insert(collection, **fields):
    result = await collection.insert_one(fields)
    return result.inserted_id


@pytest.fixture
async def broken_state(db_manager):
    """A small graph with every kind of inconsistency the sweep repairs."""
    ghost_user = ObjectId()
    ghost_review = ObjectId()
    ghost_collection = ObjectId()

    paul = await insert(db_manager.users, full_name="Paul", email="paul@example.com",
                        reviews=[ghost_review], followers=[], following=[ghost_user], collections=[])
    jessica = await insert(db_manager.users, full_name="Jessica", email="jessica@example.com",
                           reviews=[], followers=[], following=[], collections=[ghost_collection])
    dune = await insert(db_manager.books, title="Dune", reviews=[], collections=[])

    # Review missing from both back-reference lists
    review = await insert(db_manager.reviews, title="Epic", book=dune, user=paul)
    # Review whose author no longer exists
    orphan_review = await insert(db_manager.reviews, title="Lost", book=dune, user=ghost_user)
    # Collection missing from its owner and its book, and listing a deleted book
    collection = await insert(db_manager.collections, name="Arrakis", user=jessica, books=[dune, ObjectId()])
    # Collection whose owner no longer exists
    orphan_collection = await insert(db_manager.collections, name="Gone", user=ghost_user, books=[dune])

    # One-sided follow edge
    await db_manager.users.update_one({"_id": paul}, {"$push": {"following": jessica}})

    return {
        "paul": paul, "jessica": jessica, "dune": dune, "review": review,
        "orphan_review": orphan_review, "collection": collection,
        "orphan_collection": orphan_collection,
    }


class TestReferenceReconciler:
    """Test cases for the reconciliation sweep."""

    @pytest.mark.asyncio
    async def test_sweep_repairs_references(self, db_manager, broken_state):
        result = await ReferenceReconciler(db_manager).run()

        assert result.orphans_deleted == {"reviews": 1, "collections": 1}
        assert result.dangling_references_removed == {
            "users.reviews": 1,
            "users.following": 1,
            "users.collections": 1,
            "collections.books": 1,
        }
        assert result.back_references_restored == {
            "users.reviews": 1,
            "users.collections": 1,
            "users.followers": 1,
            "books.reviews": 1,
            "books.collections": 1,
        }
        assert result.finished_at is not None

        paul = await db_manager.users.find_one({"_id": broken_state["paul"]})
        jessica = await db_manager.users.find_one({"_id": broken_state["jessica"]})
        dune = await db_manager.books.find_one({"_id": broken_state["dune"]})
        collection = await db_manager.collections.find_one({"_id": broken_state["collection"]})

        assert paul["reviews"] == [broken_state["review"]]
        assert paul["following"] == [broken_state["jessica"]]
        assert jessica["followers"] == [broken_state["paul"]]
        assert jessica["collections"] == [broken_state["collection"]]
        assert dune["reviews"] == [broken_state["review"]]
        assert dune["collections"] == [broken_state["collection"]]
        assert collection["books"] == [broken_state["dune"]]
        assert await db_manager.reviews.find_one({"_id": broken_state["orphan_review"]}) is None
        assert await db_manager.collections.find_one({"_id": broken_state["orphan_collection"]}) is None

    @pytest.mark.asyncio
    async def test_second_sweep_changes_nothing(self, db_manager, broken_state):
        reconciler = ReferenceReconciler(db_manager)
        await reconciler.run()

        result = await reconciler.run()

        assert result.total_repairs == 0

    @pytest.mark.asyncio
    async def test_consistent_graph_untouched(self, services, admin, reader, sample_book_fields, db_manager):
        book = await services.books.create_book(admin, sample_book_fields)
        await services.reviews.create_review(reader, book["id"], {"title": "Epic", "text": "Sand", "rating": "5"})
        await services.collections.create_collection(reader, "Arrakis", [book["id"]])
        await services.users.follow(reader, admin.id)

        result = await ReferenceReconciler(db_manager).run()

        assert result.total_repairs == 0
