import unittest

from kioskauction.chain.model import (
    Address,
    ChainObject,
    CLOCK_ID,
    KIOSK_TYPE,
    MoveType,
    ObjectId,
    ObjectOwner,
    OwnerKind,
    TransactionEffects,
    CreatedObject,
    GasCost,
)
from kioskauction.errors import InvalidObjectIdError, UnexpectedChainStateError
from tests.test_support import KioskAuctionTestCase

KIOSK_ID = "0x88411ccf93211de8e5f2a6416e4db21de4a0d69fc308a2a72e970ff05758a083"


class ObjectIdTestCase(KioskAuctionTestCase):
    def test_valid_object_id(self):
        object_id = ObjectId(KIOSK_ID.upper().replace("0X", "0x"))
        self.assertEqual(KIOSK_ID, object_id)
        self.assertIsInstance(object_id, str)

    def test_invalid_object_ids(self):
        for value in [
            "",
            "0x",
            "0x6",
            KIOSK_ID[2:],
            KIOSK_ID + "0",
            KIOSK_ID[:-1] + "g",
            None,
            123,
        ]:
            with self.subTest(value=value):
                with self.assertRaises(InvalidObjectIdError):
                    ObjectId(value)  # type: ignore

    def test_normalize_short_form(self):
        self.assertEqual("0x" + "0" * 63 + "6", CLOCK_ID)
        self.assertEqual(ObjectId(KIOSK_ID), ObjectId.normalize(KIOSK_ID))
        with self.assertRaises(InvalidObjectIdError):
            ObjectId.normalize("0xnope")

    def test_zero_address(self):
        self.assertIsNone(Address.parse_optional("0x0"))
        self.assertIsNone(Address.parse_optional(None))
        self.assertEqual(Address(KIOSK_ID), Address.parse_optional(KIOSK_ID))
        self.assertTrue(Address.normalize("0x0").is_zero)


class MoveTypeTestCase(KioskAuctionTestCase):
    def test_parse(self):
        move_type = MoveType.parse("0x2::kiosk::Kiosk")
        self.assertEqual(ObjectId.normalize("0x2"), move_type.address)
        self.assertEqual("kiosk", move_type.module)
        self.assertEqual("Kiosk", move_type.name)
        self.assertEqual((), move_type.type_params)
        self.assertEqual(KIOSK_TYPE, move_type)

    def test_type_params(self):
        move_type = MoveType.parse(
            "0x2::dynamic_field::Field<0x2::kiosk::Item, 0x2::coin::Coin<0x2::sui::SUI>>"
        )
        self.assertEqual(("0x2::kiosk::Item", "0x2::coin::Coin<0x2::sui::SUI>"), move_type.type_params)
        self.assertTrue(move_type.is_struct("0x2::dynamic_field::Field"))
        self.assertFalse(move_type.is_struct(KIOSK_TYPE))
        self.assertEqual(move_type, MoveType.parse(str(move_type)))

    def test_invalid(self):
        for value in ["kiosk::Kiosk", "0x2::kiosk", "0x2::kiosk::Kiosk<", "0x2::1kiosk::Kiosk", "0xzz::a::B"]:
            with self.subTest(value=value):
                with self.assertRaises(InvalidObjectIdError):
                    MoveType.parse(value)


class ObjectOwnerTestCase(KioskAuctionTestCase):
    def test_owner_kinds(self):
        owner = ObjectOwner.address_owner(KIOSK_ID)
        self.assertEqual(OwnerKind.ADDRESS, owner.kind)
        self.assertTrue(owner.is_owned_by(KIOSK_ID))
        self.assertFalse(owner.is_shared)

        self.assertTrue(ObjectOwner.shared().is_shared)
        self.assertFalse(ObjectOwner.shared().is_owned_by(KIOSK_ID))
        # owned by an object is not owned by an address, even when the ids are equal
        self.assertFalse(ObjectOwner.object_owner(KIOSK_ID).is_owned_by(KIOSK_ID))


class ChainObjectTestCase(KioskAuctionTestCase):
    def test_missing_field(self):
        obj = ChainObject(ObjectId(KIOSK_ID), KIOSK_TYPE, ObjectOwner.shared(), {"owner": "0x1"})
        self.assertEqual("0x1", obj.get_field("owner"))
        with self.assertRaises(UnexpectedChainStateError):
            obj.get_field("item_count")

    def test_created_of_type(self):
        auction_type = MoveType.parse(f"{KIOSK_ID}::marketplace::Auction")
        effects = TransactionEffects(
            success=True,
            digest="digest",
            gas=GasCost(computation=10, storage=5, rebate=3),
            created=(
                CreatedObject(ObjectId(KIOSK_ID), KIOSK_TYPE),
                CreatedObject(ObjectId(KIOSK_ID[:-1] + "0"), auction_type),
                CreatedObject(ObjectId(KIOSK_ID[:-1] + "1"), None),
            ),
        )
        self.assertEqual(12, effects.gas.net)
        created = effects.created_of_type(auction_type)
        self.assertEqual(1, len(created))
        self.assertEqual(KIOSK_ID[:-1] + "0", created[0].object_id)


if __name__ == "__main__":
    unittest.main()
