import unittest

import console_rows as cr


def _snapshot():
    return [
        cr.ItemSnapshot("ITEM-001", "Premium Widget", 1000, 50, 0.18, 1350),
        cr.ItemSnapshot("ITEM-002", "Budget Gadget", 200, 0, 0.18, 260),
        cr.ItemSnapshot("ITEM-003", "Risky Business", 4000, 10, 0.18, 5200),
        cr.ItemSnapshot("ITEM-004", "Zero Cost Item", 0, 100, 0.18, 100),
    ]


class ParseSnapshotItemTest(unittest.TestCase):
    def test_parses_strings_and_numbers(self):
        item = cr.parse_snapshot_item({
            "item_code": " ITEM-9 ", "item_name": "Thing", "cost_price": "12.5",
            "stock_quantity": "4", "gst_rate": 0.05, "previous_base_selling_price": None,
        })
        self.assertEqual(item.item_code, "ITEM-9")
        self.assertEqual(item.cost_price, 12.5)
        self.assertEqual(item.stock_quantity, 4)
        self.assertEqual(item.gst_rate, 0.05)
        self.assertIsNone(item.previous_base_selling_price)

    def test_rejects_unknown_gst_rate(self):
        with self.assertRaises(cr.InvalidSnapshotItem) as ctx:
            cr.parse_snapshot_item({"item_code": "A", "cost_price": 1, "stock_quantity": 1, "gst_rate": 0.12})
        self.assertEqual(ctx.exception.item_code, "A")

    def test_rejects_missing_fields(self):
        with self.assertRaises(cr.InvalidSnapshotItem):
            cr.parse_snapshot_item({"cost_price": 1, "stock_quantity": 1, "gst_rate": 0.18})
        with self.assertRaises(cr.InvalidSnapshotItem):
            cr.parse_snapshot_item({"item_code": "A", "stock_quantity": 1, "gst_rate": 0.18})
        with self.assertRaises(cr.InvalidSnapshotItem):
            cr.parse_snapshot_item({"item_code": "A", "cost_price": "abc", "stock_quantity": 1, "gst_rate": 0.18})


class BuildRowsTest(unittest.TestCase):
    def test_empty_working_uses_snapshot_inputs(self):
        snapshot = _snapshot()
        rows = cr.build_rows(snapshot, {})
        self.assertEqual([r.item_code for r in rows], [s.item_code for s in snapshot])
        for row, snap in zip(rows, snapshot):
            self.assertEqual(row.cost_price, snap.cost_price)
            self.assertEqual(row.stock_quantity, snap.stock_quantity)
            self.assertEqual(row.gst_rate, snap.gst_rate)
            self.assertFalse(row.is_modified)
            self.assertFalse(row.orphaned)

    def test_scenario_unchanged_item_within_tolerance(self):
        row = cr.build_rows(_snapshot(), {})[0]
        self.assertEqual(row.derived_pricing.base_selling_price, 1388.78)
        self.assertEqual(row.validation.issues, [])

    def test_scenario_override_triggers_price_jump(self):
        rows = cr.build_rows(_snapshot(), {"ITEM-003": {"cost_price": 5000}})
        row = rows[2]
        self.assertTrue(row.is_modified)
        self.assertEqual(row.cost_price, 5000)
        self.assertEqual(row.stock_quantity, 10)
        self.assertEqual(row.derived_pricing.base_selling_price, 6943.89)
        self.assertIn("price_jump", [i.code for i in row.validation.issues])

    def test_is_modified_only_when_value_differs(self):
        working = {
            "ITEM-001": cr.WorkingItemState(cost_price=1000),
            "ITEM-002": cr.WorkingItemState(stock_quantity=7),
        }
        rows = cr.build_rows(_snapshot(), working)
        self.assertFalse(rows[0].is_modified)
        self.assertTrue(rows[1].is_modified)
        self.assertFalse(rows[2].is_modified)

    def test_zero_cost_row_is_blocked_not_raised(self):
        row = cr.build_rows(_snapshot(), {})[3]
        self.assertIsNotNone(row.derived_pricing)
        self.assertFalse(row.validation.ok)
        self.assertEqual(row.validation.issues[0].code, "cost_invalid")

    def test_negative_override_has_no_pricing(self):
        row = cr.build_rows(_snapshot(), {"ITEM-001": {"cost_price": -5}})[0]
        self.assertIsNone(row.derived_pricing)
        self.assertEqual(row.validation.issues[0].code, "cost_invalid")

    def test_huge_override_blocks_row_instead_of_raising(self):
        rows = cr.build_rows(_snapshot(), {"ITEM-001": {"cost_price": 1e307}})
        row = rows[0]
        self.assertTrue(row.is_modified)
        self.assertIsNone(row.derived_pricing)
        self.assertEqual([i.code for i in row.validation.issues], ["pricing_missing"])
        self.assertFalse(cr.sync_eligibility(rows).can_sync)

    def test_orphans_surface_after_snapshot_rows(self):
        rows = cr.build_rows(_snapshot(), {"GONE-1": {"cost_price": 10}, "ITEM-002": {"stock_quantity": 3}})
        self.assertEqual(len(rows), 5)
        orphan = rows[-1]
        self.assertEqual(orphan.item_code, "GONE-1")
        self.assertTrue(orphan.orphaned)
        self.assertTrue(orphan.is_modified)
        self.assertFalse(orphan.validation.ok)

    def test_orphans_can_be_dropped(self):
        rows = cr.build_rows(_snapshot(), {"GONE-1": {"cost_price": 10}}, include_orphans=False)
        self.assertEqual(len(rows), 4)

    def test_unknown_working_field_rejected(self):
        with self.assertRaises(ValueError):
            cr.build_rows(_snapshot(), {"ITEM-001": {"gst_rate": 0.05}})


class ChangeSummaryTest(unittest.TestCase):
    def test_only_modified_rows_with_new_values(self):
        rows = cr.build_rows(_snapshot(), {
            "ITEM-002": {"stock_quantity": 12},
            "ITEM-003": {"cost_price": 5000},
            "GONE-1": {"cost_price": 1},
        })
        changes = cr.build_change_summary(rows)
        self.assertEqual([c.item_code for c in changes], ["ITEM-002", "ITEM-003"])

        stock_change = changes[0]
        self.assertEqual(stock_change.new_stock_quantity, 12)
        self.assertEqual(stock_change.previous_stock_quantity, 0)
        self.assertIsNone(stock_change.new_cost_price)
        self.assertEqual(stock_change.new_price, 277.76)

        price_change = changes[1].to_payload()
        self.assertEqual(price_change["new_cost_price"], 5000)
        self.assertEqual(price_change["new_price"], 6943.89)
        self.assertEqual(price_change["previous_price"], 5200)
        self.assertNotIn("new_stock_quantity", price_change)

    def test_round_trip_payload(self):
        change = cr.ChangeSummaryRow("A", "Thing", new_cost_price=5.0)
        self.assertEqual(cr.ChangeSummaryRow.from_payload(change.to_payload()), change)


class EligibilityTest(unittest.TestCase):
    def test_nothing_modified(self):
        result = cr.sync_eligibility(cr.build_rows(_snapshot(), {}))
        self.assertFalse(result.can_sync)
        self.assertEqual(result.modified_count, 0)

    def test_warnings_do_not_block(self):
        result = cr.sync_eligibility(cr.build_rows(_snapshot(), {"ITEM-003": {"cost_price": 5000}}))
        self.assertTrue(result.can_sync)
        self.assertEqual(result.warned_count, 1)

    def test_errors_on_modified_rows_block(self):
        result = cr.sync_eligibility(cr.build_rows(_snapshot(), {"ITEM-004": {"stock_quantity": 1}}))
        self.assertFalse(result.can_sync)
        self.assertEqual(result.blocked_count, 1)


class WorkingSetTest(unittest.TestCase):
    def test_edit_and_reset(self):
        ws = cr.WorkingSet(_snapshot())
        ws.update_cell("ITEM-001", "cost_price", 1100)
        ws.update_cell("ITEM-001", "stock_quantity", 40)
        self.assertEqual(ws.overrides()["ITEM-001"], cr.WorkingItemState(1100, 40))
        self.assertTrue(ws.rows()[0].is_modified)

        ws.reset_row("ITEM-001")
        self.assertEqual(ws.overrides(), {})
        self.assertFalse(ws.rows()[0].is_modified)

    def test_setting_back_to_snapshot_clears_override(self):
        ws = cr.WorkingSet(_snapshot())
        ws.update_cell("ITEM-002", "cost_price", 210)
        ws.update_cell("ITEM-002", "cost_price", 200)
        self.assertNotIn("ITEM-002", ws.overrides())

    def test_rejects_bad_cells(self):
        ws = cr.WorkingSet(_snapshot())
        with self.assertRaises(ValueError):
            ws.update_cell("ITEM-001", "gst_rate", 0.05)
        with self.assertRaises(ValueError):
            ws.update_cell("ITEM-001", "cost_price", "12")

    def test_reload_keeps_edits_for_present_items(self):
        ws = cr.WorkingSet(_snapshot())
        ws.update_cell("ITEM-001", "cost_price", 1100)
        ws.update_cell("ITEM-002", "stock_quantity", 5)
        ws.load_snapshot(_snapshot()[:1])
        rows = ws.rows()
        self.assertEqual([r.item_code for r in rows], ["ITEM-001", "ITEM-002"])
        self.assertTrue(rows[1].orphaned)
        ws.reset_all()
        self.assertEqual(len(ws.rows()), 1)


if __name__ == "__main__":
    unittest.main()
