import os
import unittest
from unittest.mock import AsyncMock, patch

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "dvision_test")

from fastapi import HTTPException

import server
from mongo_fakes import FakeDb, cursor

ADMIN = {"id": "admin-1", "token_role": "admin"}
PREP_CLASS = {"id": "class-jee", "type": "preparation", "name": "JEE Mains", "is_active": True}


def plan_request(**fields):
    return server.SubscriptionPlanRequest(**fields)


class PlanTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = FakeDb()
        patcher = patch.object(server, "db", self.db)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def assert_rejected(self, payload, detail):
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_create_plan(payload, current_user=ADMIN)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.detail, detail)


class TestCreateValidation(PlanTestCase):
    async def test_duration_must_be_known(self):
        await self.assert_rejected(
            plan_request(name="X", duration="weekly", price=10, board="CBSE", classes=[10]),
            "Invalid duration. Must be monthly, quarterly, half_yearly, yearly, or demo",
        )

    async def test_demo_needs_positive_integer_validity(self):
        for validity in (None, 0, 2.5, "3"):
            await self.assert_rejected(
                plan_request(name="Demo", duration="demo", validityDays=validity, board="CBSE", classes=[10]),
                "For demo plans, please provide validityDays (must be a positive integer)",
            )

    async def test_price_required_except_for_demo(self):
        await self.assert_rejected(
            plan_request(name="X", duration="monthly", board="CBSE", classes=[10]),
            "Please provide price",
        )

    async def test_regular_needs_board_and_valid_classes(self):
        await self.assert_rejected(
            plan_request(name="X", duration="monthly", price=10, classes=[10]),
            "Please provide board and classes for regular plan",
        )
        await self.assert_rejected(
            plan_request(name="X", duration="monthly", price=10, board="ICSE", classes=[10]),
            "Invalid board. Must be CBSE or RBSE",
        )
        await self.assert_rejected(
            plan_request(name="X", duration="monthly", price=10, board="CBSE", classes=[0, 13, "ten"]),
            "Please provide valid classes (numbers between 1-12)",
        )

    async def test_classes_must_exist_in_catalog(self):
        self.db.returns("classes", "count_documents", 1)
        await self.assert_rejected(
            plan_request(name="X", duration="monthly", price=10, board="CBSE", classes=[10, 11]),
            "Some classes do not exist for the selected board",
        )

    async def test_duplicate_duration_for_overlapping_class(self):
        self.db.returns("classes", "count_documents", 2)
        self.db.finds("subscription_plans", [{"classes": [10]}, {"classes": [8, 9]}])
        await self.assert_rejected(
            plan_request(name="X", duration="monthly", price=10, board="CBSE", classes=[10, 11]),
            "Monthly subscription plan already exists for Class 10. "
            "Please update the existing plan instead of creating a new one.",
        )

    async def test_preparation_rules(self):
        await self.assert_rejected(
            plan_request(type="preparation", name="JEE", duration="monthly", price=10),
            "Please provide classId for preparation plan",
        )
        self.db.returns("classes", "find_one", {**PREP_CLASS, "is_active": False})
        await self.assert_rejected(
            plan_request(type="preparation", name="JEE", duration="monthly", price=10, classId="class-jee"),
            "Invalid or inactive preparation class",
        )
        self.db.returns("classes", "find_one", PREP_CLASS)
        self.db.returns("subscription_plans", "find_one", {"id": "existing"})
        await self.assert_rejected(
            plan_request(type="preparation", name="JEE", duration="quarterly", price=10, classId="class-jee"),
            "Quarterly subscription plan already exists for JEE Mains. "
            "Please update the existing plan instead of creating a new one.",
        )


class TestCreateSuccess(PlanTestCase):
    async def test_regular_plan_is_stored(self):
        self.db.returns("classes", "count_documents", 2)
        payload = plan_request(name="CBSE 9-10 Yearly", duration="yearly", price=4999, board="CBSE", classes=[10, 9, 10])
        response = await server.admin_create_plan(payload, current_user=ADMIN)
        stored = self.db.subscription_plans.insert_one.await_args.args[0]
        self.assertEqual(stored["classes"], [9, 10])
        self.assertEqual(stored["original_price"], 4999)
        self.assertTrue(stored["is_active"])
        self.assertIsNone(stored["validity_days"])
        self.assertEqual(response["data"]["subscription_plan"]["id"], stored["id"])

    async def test_demo_plan_defaults_price_to_zero(self):
        self.db.returns("classes", "count_documents", 1)
        payload = plan_request(name="Trial", duration="demo", validityDays=5, board="RBSE", classes=[8])
        await server.admin_create_plan(payload, current_user=ADMIN)
        stored = self.db.subscription_plans.insert_one.await_args.args[0]
        self.assertEqual(stored["price"], 0)
        self.assertEqual(stored["validity_days"], 5)


class TestUpdate(PlanTestCase):
    async def test_missing_plan(self):
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_update_plan("nope", plan_request(name="x"), current_user=ADMIN)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_type_change_clears_other_shape(self):
        self.db.returns(
            "subscription_plans",
            "find_one",
            {"id": "p1", "type": "regular", "board": "CBSE", "classes": [10], "duration": "monthly"},
        )
        self.db.returns("classes", "find_one", PREP_CLASS)
        await server.admin_update_plan("p1", plan_request(type="preparation", classId="class-jee"), current_user=ADMIN)
        updates = self.db.subscription_plans.update_one.await_args.args[1]["$set"]
        self.assertEqual(updates["type"], "preparation")
        self.assertIsNone(updates["board"])
        self.assertEqual(updates["classes"], [])
        self.assertEqual(updates["class_id"], "class-jee")

    async def test_leaving_demo_clears_validity(self):
        self.db.returns("subscription_plans", "find_one", {"id": "p1", "type": "regular", "duration": "demo", "validity_days": 3})
        await server.admin_update_plan("p1", plan_request(duration="monthly", price=299), current_user=ADMIN)
        updates = self.db.subscription_plans.update_one.await_args.args[1]["$set"]
        self.assertIsNone(updates["validity_days"])
        self.assertEqual(updates["price"], 299)


class TestPublicListing(PlanTestCase):
    async def test_plans_flagged_against_active_subscriptions(self):
        regular = {"id": "r10", "type": "regular", "board": "CBSE", "classes": [10], "duration": "monthly"}
        prep = {"id": "jee", "type": "preparation", "class_id": "class-jee", "duration": "yearly"}
        self.db.subscription_plans.find.side_effect = [cursor([regular]), cursor([prep])]
        self.db.finds("classes", [PREP_CLASS])
        sources = [{"type": "preparation", "board": None, "classes": [], "class_id": "class-jee", "origin": "payment"}]
        with patch.object(server, "get_optional_student", AsyncMock(return_value={"id": "stu-1"})), patch.object(
            server, "load_active_sources", AsyncMock(return_value=sources)
        ):
            response = await server.public_subscription_plans(request=None, board="CBSE", student_class="10")

        plans = {p["id"]: p for p in response["data"]["subscription_plans"]}
        self.assertFalse(plans["r10"]["is_disabled"])
        self.assertIsNone(plans["r10"]["disabled_reason"])
        self.assertTrue(plans["jee"]["is_disabled"])
        self.assertEqual(plans["jee"]["disabled_reason"], "You already have an active subscription for JEE Mains")
        regular_query = self.db.subscription_plans.find.call_args_list[0].args[0]
        self.assertEqual(regular_query["duration"], {"$ne": "demo"})
        self.assertEqual(regular_query["classes"], 10)

    async def test_anonymous_without_class_sees_preparation_only(self):
        prep = {"id": "jee", "type": "preparation", "class_id": "class-jee", "duration": "yearly"}
        self.db.finds("subscription_plans", [prep])
        with patch.object(server, "get_optional_student", AsyncMock(return_value=None)):
            response = await server.public_subscription_plans(request=None, board="CBSE", student_class=None)
        self.assertEqual([p["id"] for p in response["data"]["subscription_plans"]], ["jee"])
        self.assertEqual(self.db.subscription_plans.find.call_count, 1)



class TestClassCatalog(PlanTestCase):
    async def test_missing_class(self):
        for call in (
            server.admin_get_class("nope", current_user=ADMIN),
            server.admin_update_class("nope", server.ClassUpdateRequest(isActive=False), current_user=ADMIN),
        ):
            with self.assertRaises(HTTPException) as ctx:
                await call
            self.assertEqual(ctx.exception.status_code, 404)
            self.assertEqual(ctx.exception.detail, "Class not found with id of nope")

    async def test_delete(self):
        response = await server.admin_delete_class("class-jee", current_user=ADMIN)
        self.assertEqual(response["message"], "Class deleted successfully")
        self.db.classes.delete_one.return_value.deleted_count = 0
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_delete_class("class-jee", current_user=ADMIN)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_code_change_checks_duplicates(self):
        self.db.classes.find_one.side_effect = [dict(PREP_CLASS, class_code="JEE1"), {"id": "other"}]
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_update_class(
                "class-jee", server.ClassUpdateRequest(classCode=" neet1 "), current_user=ADMIN
            )
        self.assertEqual(ctx.exception.detail, "Class with this class code already exists")
        duplicate_query = self.db.classes.find_one.call_args.args[0]
        self.assertEqual(duplicate_query["class_code"], "NEET1")
        self.assertEqual(duplicate_query["id"], {"$ne": "class-jee"})

    async def test_regular_board_change_checks_duplicates(self):
        regular = {"id": "c10", "type": "regular", "class": 10, "board": "CBSE", "name": "Class 10 (CBSE)"}
        self.db.classes.find_one.side_effect = [regular, {"id": "c10-rbse"}]
        with self.assertRaises(HTTPException) as ctx:
            await server.admin_update_class("c10", server.ClassUpdateRequest(board="RBSE"), current_user=ADMIN)
        self.assertEqual(ctx.exception.detail, "Class 10 with board RBSE already exists")

    async def test_switch_to_preparation_clears_class_and_board(self):
        regular = {"id": "c10", "type": "regular", "class": 10, "board": "CBSE", "name": "Class 10 (CBSE)"}
        self.db.classes.find_one.side_effect = [regular, None]
        response = await server.admin_update_class(
            "c10",
            server.ClassUpdateRequest(type="preparation", name="NEET", isActive=False),
            current_user=ADMIN,
        )
        updates = self.db.classes.update_one.call_args.args[1]["$set"]
        self.assertEqual(updates["type"], "preparation")
        self.assertIsNone(updates["class"])
        self.assertIsNone(updates["board"])
        self.assertEqual(updates["name"], "NEET")
        self.assertFalse(updates["is_active"])
        self.assertEqual(response["message"], "Class updated successfully")
        self.assertEqual(response["data"]["class"]["name"], "NEET")

    async def test_unchanged_regular_keeps_custom_name(self):
        regular = {"id": "c10", "type": "regular", "class": 10, "board": "CBSE", "name": "Boards Batch"}
        self.db.returns("classes", "find_one", regular)
        await server.admin_update_class("c10", server.ClassUpdateRequest(description="Evening"), current_user=ADMIN)
        updates = self.db.classes.update_one.call_args.args[1]["$set"]
        self.assertNotIn("name", updates)
        self.assertEqual(updates["description"], "Evening")
        self.assertEqual(self.db.classes.find_one.call_count, 1)


class TestPreparationClassCoverage(PlanTestCase):
    async def test_lists_classes_with_missing_durations(self):
        neet = {"id": "class-neet", "type": "preparation", "name": "NEET", "is_active": True}
        self.db.finds("classes", [PREP_CLASS, neet])
        self.db.finds(
            "subscription_plans",
            [{"class_id": "class-jee", "duration": d} for d in server.PLAN_DURATIONS]
            + [{"class_id": "class-neet", "duration": "monthly"}],
        )
        response = await server.admin_plan_preparation_classes(current_user=ADMIN)

        self.assertEqual(response["count"], 1)
        (listed,) = response["data"]["classes"]
        self.assertEqual(listed["id"], "class-neet")
        self.assertEqual(listed["missing_durations"], [d for d in server.PLAN_DURATIONS if d != "monthly"])
        self.assertEqual(
            self.db.classes.find.call_args.args[0], {"type": "preparation", "is_active": True}
        )


if __name__ == "__main__":
    unittest.main()
