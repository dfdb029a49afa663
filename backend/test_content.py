import os
import unittest
from unittest.mock import patch

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "dvision_test")

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

import server
from content_defaults import CONTACT_DEFAULT, DOCUMENT_DEFAULTS
from mongo_fakes import FakeDb

ADMIN = {"id": "admin-1", "token_role": "admin"}


class ContentTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = FakeDb()
        patcher = patch.object(server, "db", self.db)
        patcher.start()
        self.addCleanup(patcher.stop)


class TestSeeding(ContentTestCase):
    async def test_seeds_once_with_upsert_on_seed_key(self):
        seeded = {"id": "doc-1", "title": "About Us", "is_active": True, "seed_key": "default"}
        self.db.returns("about_us", "find_one_and_update", seeded)
        result = await server.seed_if_empty("about_us", {"title": "About Us", "content": "x"})
        self.assertEqual(result, seeded)
        call = self.db.about_us.find_one_and_update.await_args
        self.assertEqual(call.args[0], {"seed_key": "default"})
        self.assertEqual(call.args[1]["$setOnInsert"]["title"], "About Us")
        self.assertNotIn("seed_key", call.args[1]["$setOnInsert"])
        self.assertTrue(call.kwargs["upsert"])

    async def test_non_empty_collection_is_left_alone(self):
        self.db.returns("about_us", "count_documents", 2)
        self.assertIsNone(await server.seed_if_empty("about_us", {"title": "About Us"}))
        self.db.about_us.find_one_and_update.assert_not_awaited()

    async def test_lost_race_rereads_the_winner(self):
        winner = {"id": "doc-9", "seed_key": "default", "is_active": True}
        self.db.about_us.find_one_and_update.side_effect = DuplicateKeyError("E11000")
        self.db.returns("about_us", "find_one", winner)
        self.assertEqual(await server.seed_if_empty("about_us", {"title": "About Us"}), winner)


class TestDocuments(ContentTestCase):
    async def test_existing_document_is_returned_without_seeding(self):
        doc = {"id": "terms-2", "slug": "default", "is_active": True, "content": "v2"}
        self.db.returns("terms_conditions", "find_one", doc)
        self.assertEqual(await server.current_document("terms"), doc)
        self.db.terms_conditions.count_documents.assert_not_awaited()
        query = self.db.terms_conditions.find_one.await_args.args[0]
        self.assertEqual(query, {"slug": "default", "is_active": True})

    async def test_empty_collection_gets_default(self):
        self.db.privacy_policies.find_one_and_update.side_effect = lambda flt, update, **kw: {
            **update["$setOnInsert"],
            **flt,
        }
        doc = await server.current_document("privacy")
        self.assertEqual(doc["title"], DOCUMENT_DEFAULTS["privacy"]["title"])
        self.assertEqual(doc["slug"], "default")
        self.assertEqual(doc["version"], "1.0.0")

    async def test_public_routes_registered_for_each_document(self):
        paths = {(route.path, tuple(sorted(route.methods))) for route in server.api_router.routes}
        for kind in ("about", "privacy", "terms"):
            self.assertIn((f"/api/{kind}", ("GET",)), paths)
            self.assertIn((f"/api/{kind}/{{doc_id}}", ("PUT",)), paths)


class TestContact(ContentTestCase):
    async def test_active_items_returned_in_order(self):
        items = [{"id": "c-1", "email": "a@example.com"}, {"id": "c-2", "email": "b@example.com"}]
        self.db.finds("contact_infos", items)
        response = await server.get_contact_info()
        self.assertEqual(response["data"]["contacts"], items)
        self.db.contact_infos.find_one_and_update.assert_not_awaited()

    async def test_empty_contact_collection_seeds_default(self):
        self.db.contact_infos.find_one_and_update.side_effect = lambda flt, update, **kw: update["$setOnInsert"]
        response = await server.get_contact_info()
        contact = response["data"]["contacts"][0]
        self.assertEqual(contact["email"], CONTACT_DEFAULT["email"])
        self.assertEqual(contact["support_hours"], CONTACT_DEFAULT["support_hours"])

    async def test_create_requires_email(self):
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_create_contact_info(server.ContactInfoRequest(title="Help"), current_user=ADMIN)
        self.assertEqual(ctx.exception.detail, "Please provide a support email address")

    async def test_create_fills_defaults(self):
        payload = server.ContactInfoRequest(email="help@example.com", supportHours="24x7")
        response = await server.admin_create_contact_info(payload, current_user=ADMIN)
        contact = response["data"]["contact"]
        self.assertEqual(contact["support_hours"], "24x7")
        self.assertEqual(contact["address"], CONTACT_DEFAULT["address"])
        self.assertTrue(contact["is_active"])
        self.db.contact_infos.insert_one.assert_awaited_once()

    async def test_update_missing_item(self):
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_update_contact_info("nope", server.ContactInfoRequest(title="x"), current_user=ADMIN)
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
