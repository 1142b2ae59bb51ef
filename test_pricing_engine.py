import unittest

import pricing_engine as pe


class RoundCurrencyTest(unittest.TestCase):
    def test_half_up(self):
        self.assertEqual(pe.round_currency(138.877), 138.88)
        self.assertEqual(pe.round_currency(138.875), 138.88)
        self.assertEqual(pe.round_currency(1.005), 1.01)
        self.assertEqual(pe.round_currency(2.344), 2.34)

    def test_zero(self):
        self.assertEqual(pe.round_currency(0), 0)


class DerivePricingTest(unittest.TestCase):
    def test_rate_card(self):
        out = pe.derive_pricing(1000, 0.18)
        self.assertAlmostEqual(out.transport_cost, 90.0)
        self.assertAlmostEqual(out.delivery_cost, 13.08)
        self.assertAlmostEqual(out.adjusted_cost, 1103.08)
        self.assertEqual(out.base_selling_price, 1388.78)
        self.assertEqual(out.gst_amount, 249.98)
        self.assertEqual(out.final_selling_price, 1638.76)
        self.assertAlmostEqual(out.margin, 0.38878)

    def test_low_gst(self):
        out = pe.derive_pricing(750, 0.05)
        self.assertEqual(out.base_selling_price, 1041.58)
        self.assertEqual(out.gst_amount, 52.08)
        self.assertEqual(out.final_selling_price, 1093.66)

    def test_deterministic(self):
        first = pe.derive_pricing(1234.56, 0.18, 7)
        for _ in range(20):
            self.assertEqual(pe.derive_pricing(1234.56, 0.18, 7), first)
        self.assertEqual(repr(pe.derive_pricing(1234.56, 0.18, 7).to_dict()), repr(first.to_dict()))

    def test_stock_does_not_change_price(self):
        self.assertEqual(pe.derive_pricing(500, 0.05, 0), pe.derive_pricing(500, 0.05, 900))

    def test_zero_cost_has_no_margin(self):
        out = pe.derive_pricing(0, 0.18)
        self.assertEqual(out.base_selling_price, 0)
        self.assertIsNone(out.margin)

    def test_rejects_out_of_domain(self):
        with self.assertRaises(pe.PricingInputError):
            pe.derive_pricing(100, 0.12)
        with self.assertRaises(pe.PricingInputError):
            pe.derive_pricing(-1, 0.18)
        with self.assertRaises(pe.PricingInputError):
            pe.derive_pricing(float("nan"), 0.18)
        with self.assertRaises(pe.PricingInputError):
            pe.derive_pricing("100", 0.18)
        with self.assertRaises(ValueError):
            pe.derive_pricing(100, True)

    def test_huge_cost_is_out_of_domain(self):
        with self.assertRaises(pe.PricingInputError):
            pe.derive_pricing(1e307, 0.18)
        with self.assertRaises(pe.PricingInputError):
            pe.round_currency(float("inf"))


if __name__ == "__main__":
    unittest.main()
