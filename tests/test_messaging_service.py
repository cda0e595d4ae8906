"""Tests for conversation and message workflows."""

from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock

from pymongo.errors import PyMongoError

from moto_chat.config import Settings
from moto_chat.errors import AccessDeniedError, NotFoundError, StorageError, ValidationError
from messaging_fixtures import RecordingGateway, add_booking, add_user, build_service, new_database


class MessagingServiceTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = new_database()
        self.gateway = RecordingGateway()
        self.service = await build_service(self.db, self.gateway)
        self.admin = await add_user(self.db, "admin")
        self.staff = await add_user(self.db, "staff")
        self.staff_two = await add_user(self.db, "staff")
        self.customer = await add_user(self.db, "customer")
        self.other_customer = await add_user(self.db, "customer")
        self.booking = await add_booking(self.db, self.customer)

    async def booking_thread(self, user_id=None, role="staff"):
        return await self.service.get_or_create_booking_conversation(self.booking, user_id or self.staff, role)

    async def direct_thread(self):
        return await self.service.get_or_create_direct_conversation(self.admin, self.staff, "admin")


class BookingConversationTests(MessagingServiceTestCase):
    async def test_staff_first_access_creates_thread_with_owner(self) -> None:
        conversation = await self.booking_thread()

        self.assertEqual(conversation["type"], "booking")
        self.assertEqual(conversation["status"], "active")
        self.assertEqual(conversation["related_booking"], self.booking)
        roles = {p["user_id"]: p["role"] for p in conversation["participants"]}
        self.assertEqual(roles, {self.customer: "customer", self.staff: "staff"})

    async def test_second_staff_joins_existing_thread(self) -> None:
        first = await self.booking_thread()
        second = await self.booking_thread(self.staff_two)
        again = await self.booking_thread(self.staff_two)

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(second["id"], again["id"])
        members = [p["user_id"] for p in again["participants"]]
        self.assertEqual(sorted(members), sorted([self.customer, self.staff, self.staff_two]))
        self.assertEqual(len(members), len(set(members)))

    async def test_owner_can_open_own_booking_thread(self) -> None:
        conversation = await self.booking_thread(self.customer, "customer")

        self.assertEqual([p["user_id"] for p in conversation["participants"]], [self.customer])

    async def test_other_customer_is_denied(self) -> None:
        with self.assertRaises(AccessDeniedError):
            await self.booking_thread(self.other_customer, "customer")
        self.assertEqual(await self.db["conversations"].count_documents({}), 0)

    async def test_missing_booking_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.service.get_or_create_booking_conversation("64b000000000000000000000", self.staff, "staff")
        with self.assertRaises(NotFoundError):
            await self.service.get_or_create_booking_conversation("not-an-id", self.staff, "staff")

    async def test_concurrent_first_access_yields_one_thread(self) -> None:
        first, second = await asyncio.gather(
            self.booking_thread(self.staff),
            self.booking_thread(self.staff_two),
        )

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(await self.db["conversations"].count_documents({"related_booking": self.booking}), 1)

    async def test_lost_creation_race_returns_winner(self) -> None:
        winner = await self.booking_thread(self.staff)
        repo = self.service._conversation_repo
        real_lookup = repo.find_by_thread_key
        calls = []

        async def stale_then_real(thread_key):
            calls.append(thread_key)
            if len(calls) == 1:
                return None
            return await real_lookup(thread_key)

        repo.find_by_thread_key = stale_then_real
        loser = await self.booking_thread(self.staff_two)

        self.assertEqual(loser["id"], winner["id"])
        self.assertEqual(len(calls), 2)
        self.assertIn(self.staff_two, [p["user_id"] for p in loser["participants"]])
        self.assertEqual(await self.db["conversations"].count_documents({}), 1)


class DirectConversationTests(MessagingServiceTestCase):
    async def test_pair_maps_to_single_thread_in_either_order(self) -> None:
        first = await self.service.get_or_create_direct_conversation(self.admin, self.staff, "admin")
        second = await self.service.get_or_create_direct_conversation(self.staff, self.admin, "staff")

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(first["type"], "direct")
        self.assertIsNone(first["related_booking"])

    async def test_concurrent_creation_yields_one_thread(self) -> None:
        first, second = await asyncio.gather(
            self.service.get_or_create_direct_conversation(self.admin, self.staff, "admin"),
            self.service.get_or_create_direct_conversation(self.staff, self.admin, "staff"),
        )

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(await self.db["conversations"].count_documents({"type": "direct"}), 1)

    async def test_customer_initiator_rejected_before_target_lookup(self) -> None:
        with self.assertRaises(AccessDeniedError):
            await self.service.get_or_create_direct_conversation(self.customer, "missing-user", "customer")

    async def test_customer_target_rejected(self) -> None:
        with self.assertRaises(AccessDeniedError):
            await self.service.get_or_create_direct_conversation(self.staff, self.customer, "staff")

    async def test_unknown_target_and_self_target(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.service.get_or_create_direct_conversation(self.staff, "64b000000000000000000000", "staff")
        with self.assertRaises(ValidationError):
            await self.service.get_or_create_direct_conversation(self.staff, self.staff, "staff")


class SendMessageTests(MessagingServiceTestCase):
    async def test_unread_set_is_fixed_at_send_time(self) -> None:
        conversation = await self.booking_thread()
        message = await self.service.send_message(conversation["id"], self.customer, "customer", "When is pickup?")
        await self.booking_thread(self.staff_two)

        stored = await self.db["messages"].find_one({})
        self.assertEqual(stored["unread_by"], [self.staff])
        self.assertFalse(message["is_read"])
        self.assertEqual(message["sender_role"], "customer")

        listing = await self.service.get_conversations_for_user(self.staff_two, "staff")
        self.assertEqual(listing["items"][0]["unread_count"], 0)

    async def test_admin_to_staff_unread_round_trip(self) -> None:
        conversation = await self.direct_thread()
        await self.service.send_message(conversation["id"], self.admin, "admin", "Hello")

        listing = await self.service.get_conversations_for_user(self.staff, "staff")
        by_id = {item["id"]: item for item in listing["items"]}
        self.assertEqual(by_id[conversation["id"]]["unread_count"], 1)
        self.assertEqual(by_id[conversation["id"]]["last_message_preview"]["content"], "Hello")

        page = await self.service.get_messages(conversation["id"], self.staff, "staff")
        self.assertEqual([m["content"] for m in page["items"]], ["Hello"])
        self.assertTrue(page["items"][0]["is_read"])

        listing = await self.service.get_conversations_for_user(self.staff, "staff")
        by_id = {item["id"]: item for item in listing["items"]}
        self.assertEqual(by_id[conversation["id"]]["unread_count"], 0)
        stored = await self.db["conversations"].find_one({})
        self.assertEqual(stored["unread_counters"][self.staff], 0)
        self.assertIn("messages_read", self.gateway.room_event_names())

    async def test_content_is_trimmed_and_bounded(self) -> None:
        conversation = await self.booking_thread()
        message = await self.service.send_message(conversation["id"], self.staff, "staff", "  ready  ")
        self.assertEqual(message["content"], "ready")

        await self.service.send_message(conversation["id"], self.staff, "staff", "x" * 2000)
        for bad in ("", "   ", "x" * 2001, None):
            with self.assertRaises(ValidationError):
                await self.service.send_message(conversation["id"], self.staff, "staff", bad)
        self.assertEqual(await self.db["messages"].count_documents({}), 2)

    async def test_message_type_and_attachment_validation(self) -> None:
        conversation = await self.booking_thread()
        with self.assertRaises(ValidationError):
            await self.service.send_message(conversation["id"], self.staff, "staff", "hi", message_type="video")
        with self.assertRaises(ValidationError):
            await self.service.send_message(
                conversation["id"], self.staff, "staff", "photo", message_type="image", attachment={"url": "x"}
            )
        message = await self.service.send_message(
            conversation["id"], self.staff, "staff", "before photo", message_type="image",
            attachment={"filename": "tank.jpg", "mimetype": "image/jpeg", "size": 2048, "url": "/f/tank.jpg"},
        )
        self.assertEqual(message["attachment"]["filename"], "tank.jpg")

    async def test_reply_must_stay_in_conversation(self) -> None:
        booking_conv = await self.booking_thread()
        direct_conv = await self.direct_thread()
        parent = await self.service.send_message(booking_conv["id"], self.staff, "staff", "Quote attached")
        foreign = await self.service.send_message(direct_conv["id"], self.admin, "admin", "FYI")

        reply = await self.service.send_message(
            booking_conv["id"], self.customer, "customer", "Looks good", reply_to=parent["id"]
        )
        self.assertEqual(reply["reply_to"], parent["id"])

        for bad_parent in (foreign["id"], "garbage"):
            with self.assertRaises(ValidationError):
                await self.service.send_message(
                    booking_conv["id"], self.customer, "customer", "?", reply_to=bad_parent
                )

    async def test_non_participant_customer_cannot_write(self) -> None:
        conversation = await self.booking_thread()
        with self.assertRaises(AccessDeniedError):
            await self.service.send_message(conversation["id"], self.other_customer, "customer", "hi")
        self.assertEqual(await self.db["messages"].count_documents({}), 0)

    async def test_unknown_conversation(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.service.send_message("64b000000000000000000000", self.staff, "staff", "hi")
        with self.assertRaises(NotFoundError):
            await self.service.send_message("nope", self.staff, "staff", "hi")

    async def test_send_emits_room_and_recipient_events(self) -> None:
        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.staff, "staff", "Bike is ready")

        self.assertEqual(self.gateway.room_event_names(), ["new_message"])
        self.assertEqual(self.gateway.room_events[0][2]["message"]["content"], "Bike is ready")
        self.assertEqual(
            [(uid, event) for uid, event, _ in self.gateway.user_events],
            [(self.customer, "conversation_updated")],
        )

    async def test_preview_failure_does_not_fail_send(self) -> None:
        settings = Settings(preview_update_attempts=2)
        service = await build_service(self.db, self.gateway, settings)
        conversation = await service.get_or_create_booking_conversation(self.booking, self.staff, "staff")
        service._conversation_repo.update_on_new_message = AsyncMock(side_effect=PyMongoError("boom"))

        message = await service.send_message(conversation["id"], self.staff, "staff", "still delivered")

        self.assertEqual(message["content"], "still delivered")
        self.assertEqual(service._conversation_repo.update_on_new_message.await_count, 2)
        self.assertEqual(await self.db["messages"].count_documents({}), 1)

    async def test_storage_failure_surfaces_as_storage_error(self) -> None:
        conversation = await self.booking_thread()
        self.service._message_repo.list_for_conversation = AsyncMock(side_effect=PyMongoError("down"))

        with self.assertRaises(StorageError):
            await self.service.get_messages(conversation["id"], self.staff, "staff")


class ReadAndListTests(MessagingServiceTestCase):
    async def test_staff_reads_any_booking_thread_but_not_foreign_direct(self) -> None:
        booking_conv = await self.booking_thread()
        direct_conv = await self.direct_thread()

        page = await self.service.get_messages(booking_conv["id"], self.staff_two, "staff")
        self.assertEqual(page["items"], [])
        with self.assertRaises(AccessDeniedError):
            await self.service.get_messages(direct_conv["id"], self.staff_two, "staff")

    async def test_listing_is_scoped_by_role(self) -> None:
        booking_conv = await self.booking_thread()
        direct_conv = await self.direct_thread()

        admin_ids = [c["id"] for c in (await self.service.get_conversations_for_user(self.admin, "admin"))["items"]]
        staff_ids = [c["id"] for c in (await self.service.get_conversations_for_user(self.staff, "staff"))["items"]]
        staff_two_ids = [c["id"] for c in (await self.service.get_conversations_for_user(self.staff_two, "staff"))["items"]]
        customer_ids = [c["id"] for c in (await self.service.get_conversations_for_user(self.customer, "customer"))["items"]]
        stranger_ids = [c["id"] for c in (await self.service.get_conversations_for_user(self.other_customer, "customer"))["items"]]

        self.assertEqual(admin_ids, [direct_conv["id"]])
        self.assertEqual(sorted(staff_ids), sorted([booking_conv["id"], direct_conv["id"]]))
        self.assertEqual(staff_two_ids, [booking_conv["id"]])
        self.assertEqual(customer_ids, [booking_conv["id"]])
        self.assertEqual(stranger_ids, [])

    async def test_listing_validates_status_and_paging(self) -> None:
        with self.assertRaises(ValidationError):
            await self.service.get_conversations_for_user(self.staff, "staff", status="bogus")
        with self.assertRaises(AccessDeniedError):
            await self.service.get_conversations_for_user(self.staff, "staff", status="deleted")
        with self.assertRaises(ValidationError):
            await self.service.get_conversations_for_user(self.staff, "staff", page=0)

        result = await self.service.get_conversations_for_user(self.staff, "staff", limit=1000)
        self.assertEqual(result["limit"], 100)

    async def test_messages_are_newest_first_and_paginated(self) -> None:
        conversation = await self.booking_thread()
        for n in range(3):
            await self.service.send_message(conversation["id"], self.customer, "customer", f"msg {n}")

        page = await self.service.get_messages(conversation["id"], self.staff, "staff", page=1, limit=2)
        self.assertEqual(page["total"], 3)
        self.assertEqual(len(page["items"]), 2)
        self.assertEqual(await self.service._message_repo.count_unread(conversation["id"], self.staff), 1)

    async def test_mark_conversation_read_is_idempotent(self) -> None:
        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.customer, "customer", "one")
        await self.service.send_message(conversation["id"], self.customer, "customer", "two")

        first = await self.service.mark_conversation_as_read(conversation["id"], self.staff, "staff")
        second = await self.service.mark_conversation_as_read(conversation["id"], self.staff, "staff")

        self.assertEqual(first["updated"], 2)
        self.assertEqual(second["updated"], 0)
        stored = await self.db["conversations"].find_one({})
        self.assertEqual(stored["unread_counters"][self.staff], 0)


class LifecycleTests(MessagingServiceTestCase):
    async def test_archive_and_unarchive(self) -> None:
        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.customer, "customer", "thanks")

        archived = await self.service.archive_conversation(conversation["id"], self.staff, "staff")
        self.assertEqual(archived["status"], "archived")
        self.assertEqual(archived["archived_by"], self.staff)
        with self.assertRaises(ValidationError):
            await self.service.archive_conversation(conversation["id"], self.staff, "staff")

        listed = await self.service.get_conversations_for_user(self.staff, "staff", status="archived")
        self.assertEqual([c["id"] for c in listed["items"]], [conversation["id"]])
        page = await self.service.get_messages(conversation["id"], self.staff, "staff")
        self.assertEqual(page["total"], 1)

        restored = await self.service.unarchive_conversation(conversation["id"], self.staff, "staff")
        self.assertEqual(restored["status"], "active")
        self.assertIsNone(restored["archived_at"])

    async def test_closed_thread_rejects_messages(self) -> None:
        conversation = await self.booking_thread()
        with self.assertRaises(AccessDeniedError):
            await self.service.close_conversation(conversation["id"], self.customer, "customer")

        closed = await self.service.close_conversation(conversation["id"], self.staff, "staff")
        self.assertEqual(closed["status"], "closed")
        with self.assertRaises(ValidationError):
            await self.service.send_message(conversation["id"], self.customer, "customer", "hello?")

    async def test_delete_is_admin_only_and_soft_deletes_messages(self) -> None:
        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.customer, "customer", "one")
        await self.service.send_message(conversation["id"], self.staff, "staff", "two")

        with self.assertRaises(AccessDeniedError):
            await self.service.delete_conversation(conversation["id"], self.staff, "staff")

        result = await self.service.delete_conversation(conversation["id"], self.admin, "admin")
        self.assertEqual(result["messages_deleted"], 2)
        self.assertEqual(await self.db["messages"].count_documents({"is_deleted": False}), 0)
        self.assertEqual(await self.db["messages"].count_documents({}), 2)
        with self.assertRaises(NotFoundError):
            await self.service.get_messages(conversation["id"], self.admin, "admin")
        with self.assertRaises(NotFoundError):
            await self.service.delete_conversation(conversation["id"], self.admin, "admin")

        fresh = await self.booking_thread()
        self.assertNotEqual(fresh["id"], conversation["id"])

    async def test_delete_retry_finishes_interrupted_cascade(self) -> None:
        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.customer, "customer", "one")
        await self.service.send_message(conversation["id"], self.staff, "staff", "two")
        repo = self.service._message_repo
        real_cascade = repo.soft_delete_conversation
        calls = []

        async def fail_once(conversation_id):
            calls.append(conversation_id)
            if len(calls) == 1:
                raise PyMongoError("connection reset")
            return await real_cascade(conversation_id)

        repo.soft_delete_conversation = fail_once
        with self.assertRaises(StorageError):
            await self.service.delete_conversation(conversation["id"], self.admin, "admin")
        self.assertEqual(await self.db["messages"].count_documents({"is_deleted": False}), 2)

        result = await self.service.delete_conversation(conversation["id"], self.admin, "admin")

        self.assertEqual(result["messages_deleted"], 2)
        self.assertEqual(await self.db["messages"].count_documents({"is_deleted": False}), 0)
        stored = await self.db["conversations"].find_one({})
        self.assertEqual(stored["status"], "deleted")
        self.assertEqual(stored["unread_counters"][self.staff], 0)
        with self.assertRaises(NotFoundError):
            await self.service.delete_conversation(conversation["id"], self.admin, "admin")

    async def test_send_racing_delete_leaves_no_live_message(self) -> None:
        conversation = await self.booking_thread()
        repo = self.service._message_repo
        real_insert = repo.insert
        started, release = asyncio.Event(), asyncio.Event()

        async def held_insert(doc):
            started.set()
            await release.wait()
            return await real_insert(doc)

        repo.insert = held_insert
        send = asyncio.create_task(
            self.service.send_message(conversation["id"], self.customer, "customer", "late message")
        )
        await started.wait()
        await self.service.delete_conversation(conversation["id"], self.admin, "admin")
        release.set()

        with self.assertRaises(NotFoundError):
            await send
        self.assertEqual(await self.db["messages"].count_documents({}), 1)
        self.assertEqual(await self.db["messages"].count_documents({"is_deleted": False}), 0)
        self.assertNotIn("new_message", self.gateway.room_event_names())


class MessageMutationTests(MessagingServiceTestCase):
    async def test_edit_records_history_and_refreshes_preview(self) -> None:
        conversation = await self.booking_thread()
        message = await self.service.send_message(conversation["id"], self.staff, "staff", "Pickup at 5")

        with self.assertRaises(AccessDeniedError):
            await self.service.edit_message(message["id"], self.customer, "customer", "Pickup at 6")

        edited = await self.service.edit_message(message["id"], self.staff, "staff", "Pickup at 6")
        self.assertEqual(edited["content"], "Pickup at 6")
        self.assertTrue(edited["is_edited"])
        self.assertEqual([h["content"] for h in edited["edit_history"]], ["Pickup at 5"])
        stored = await self.db["conversations"].find_one({})
        self.assertEqual(stored["last_message_preview"]["content"], "Pickup at 6")

    async def test_delete_message_restores_previous_preview(self) -> None:
        conversation = await self.booking_thread()
        first = await self.service.send_message(conversation["id"], self.staff, "staff", "first")
        second = await self.service.send_message(conversation["id"], self.staff, "staff", "second")

        with self.assertRaises(AccessDeniedError):
            await self.service.delete_message(second["id"], self.customer, "customer")

        await self.service.delete_message(second["id"], self.staff, "staff")

        stored = await self.db["conversations"].find_one({})
        self.assertEqual(stored["last_message_preview"]["message_id"], first["id"])
        self.assertEqual(stored["unread_counters"][self.customer], 1)
        page = await self.service.get_messages(conversation["id"], self.customer, "customer")
        self.assertEqual([m["id"] for m in page["items"]], [first["id"]])
        with self.assertRaises(NotFoundError):
            await self.service.delete_message(second["id"], self.admin, "admin")

    async def test_reactions(self) -> None:
        conversation = await self.booking_thread()
        message = await self.service.send_message(conversation["id"], self.staff, "staff", "Done!")

        reacted = await self.service.add_reaction(message["id"], self.customer, "customer", "👍")
        reacted = await self.service.add_reaction(message["id"], self.customer, "customer", "👍")
        self.assertEqual(reacted["reactions"], {"👍": [self.customer]})

        cleared = await self.service.remove_reaction(message["id"], self.customer, "customer", "👍")
        self.assertEqual(cleared["reactions"], {})
        with self.assertRaises(ValidationError):
            await self.service.add_reaction(message["id"], self.customer, "customer", "$bad")
        with self.assertRaises(AccessDeniedError):
            await self.service.add_reaction(message["id"], self.other_customer, "customer", "👍")


class SearchAndDirectoryTests(MessagingServiceTestCase):
    async def test_search_is_case_insensitive_and_literal(self) -> None:
        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.customer, "customer", "Chain LUBE please")
        await self.service.send_message(conversation["id"], self.customer, "customer", "abc")

        found = await self.service.search_messages("chain lube", "admin", user_id=self.admin)
        self.assertEqual(found["total"], 1)
        literal = await self.service.search_messages("a.c", "admin", user_id=self.admin)
        self.assertEqual(literal["total"], 0)

        with self.assertRaises(AccessDeniedError):
            await self.service.search_messages("chain", "customer", user_id=self.customer)
        with self.assertRaises(ValidationError):
            await self.service.search_messages("   ", "admin", user_id=self.admin)

    async def test_staff_search_limited_to_visible_threads(self) -> None:
        booking_conv = await self.booking_thread()
        direct_conv = await self.direct_thread()
        await self.service.send_message(booking_conv["id"], self.customer, "customer", "invoice question")
        await self.service.send_message(direct_conv["id"], self.admin, "admin", "invoice totals")

        staff_two = await self.service.search_messages("invoice", "staff", user_id=self.staff_two)
        staff = await self.service.search_messages("invoice", "staff", user_id=self.staff)

        self.assertEqual([m["content"] for m in staff_two["items"]], ["invoice question"])
        self.assertEqual(staff["total"], 2)

    async def test_messaging_users_and_stats(self) -> None:
        self.gateway.online.add(self.staff)
        users = await self.service.get_messaging_users(self.admin, "admin")

        by_id = {u["id"]: u for u in users}
        self.assertEqual(set(by_id), {self.staff, self.staff_two})
        self.assertTrue(by_id[self.staff]["is_online"])
        self.assertFalse(by_id[self.staff_two]["is_online"])
        with self.assertRaises(AccessDeniedError):
            await self.service.get_messaging_users(self.customer, "customer")

        conversation = await self.booking_thread()
        await self.service.send_message(conversation["id"], self.customer, "customer", "hi")
        stats = await self.service.get_messaging_stats("admin")
        self.assertEqual(stats["total_conversations"], 1)
        self.assertEqual(stats["active_conversations"], 1)
        self.assertEqual(stats["total_messages"], 1)
        self.assertEqual(stats["online_users"], 1)
        with self.assertRaises(AccessDeniedError):
            await self.service.get_messaging_stats("staff")

    async def test_contacts_and_room_authorization(self) -> None:
        conversation = await self.booking_thread()
        await self.direct_thread()

        self.assertEqual(await self.service.get_contact_ids(self.customer), [self.staff])
        self.assertEqual(sorted(await self.service.get_contact_ids(self.staff)), sorted([self.customer, self.admin]))
        self.assertEqual(
            await self.service.authorize_room(conversation["id"], self.staff_two, "staff"), conversation["id"]
        )
        with self.assertRaises(AccessDeniedError):
            await self.service.authorize_room(conversation["id"], self.other_customer, "customer")


if __name__ == "__main__":
    unittest.main()
