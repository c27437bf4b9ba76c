"""
Tests for order total computation.
"""
import pytest

from possync.config.app_config import LoyaltyConfig, TaxConfig
from possync.errors import ValidationError
from possync.models import LineItem
from possync.sync.pricing import Discount, compute_totals, loyalty_points_for


@pytest.fixture
def basket():
    return [
        LineItem(product_id="prod-a", name="Coffee", unit_price=15000.0, quantity=2, category="grocery"),
        LineItem(product_id="prod-b", name="Tea", unit_price=8000.0, quantity=1, category="grocery"),
    ]


class TestDiscount:
    """Test cases for Discount.from_value."""

    @pytest.mark.unit
    @pytest.mark.parametrize("value,expected", [
        (None, Discount(0.0, False)),
        (5000, Discount(5000.0, False)),
        ({"type": "percentage", "value": 10}, Discount(10.0, True)),
        ({"type": "fixed", "value": 2000}, Discount(2000.0, False)),
        ({"type": "fixed_amount", "value": 2000}, Discount(2000.0, False)),
    ])
    def test_from_value(self, value, expected):
        """Test the accepted discount shapes."""
        assert Discount.from_value(value) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("value", [{"type": "coupon", "value": 1}, "10%"])
    def test_from_value_rejects(self, value):
        """Test that unknown discount shapes are rejected."""
        with pytest.raises(ValidationError):
            Discount.from_value(value)


class TestComputeTotals:
    """Test cases for compute_totals."""

    @pytest.mark.unit
    def test_no_discount(self, basket):
        """Test subtotal plus 10% VAT."""
        totals = compute_totals(basket)
        assert totals.subtotal == 38000.0
        assert totals.discount == 0.0
        assert totals.tax_amount == 3800.0
        assert totals.excise_amount == 0.0
        assert totals.total == 41800.0

    @pytest.mark.unit
    def test_percentage_discount_applied_before_tax(self, basket):
        """Test that VAT is charged on the discounted amount."""
        totals = compute_totals(basket, Discount(10, is_percentage=True))
        assert totals.discount == 3800.0
        assert totals.tax_amount == 3420.0
        assert totals.total == 37620.0

    @pytest.mark.unit
    def test_fixed_discount(self, basket):
        """Test an absolute discount."""
        totals = compute_totals(basket, Discount(5000))
        assert totals.tax_amount == 3300.0
        assert totals.total == 36300.0

    @pytest.mark.unit
    def test_discount_capped_at_subtotal(self, basket):
        """Test that a discount larger than the subtotal never makes the total negative."""
        totals = compute_totals(basket, Discount(50000))
        assert totals.discount == 38000.0
        assert totals.tax_amount == 0.0
        assert totals.total == 0.0

    @pytest.mark.unit
    @pytest.mark.parametrize("discount", [Discount(-1), Discount(150, is_percentage=True)])
    def test_invalid_discount(self, basket, discount):
        """Test that negative or over-100% discounts are rejected."""
        with pytest.raises(ValidationError):
            compute_totals(basket, discount)

    @pytest.mark.unit
    def test_rounding_half_up(self):
        """Test that amounts are rounded half-up to cents."""
        items = [LineItem(product_id="x", name="Sticker", unit_price=0.125, quantity=1)]
        totals = compute_totals(items)
        assert totals.subtotal == 0.13
        assert totals.tax_amount == 0.01
        assert totals.total == 0.14

    @pytest.mark.unit
    def test_custom_vat_rate(self, basket):
        """Test a configured VAT rate."""
        totals = compute_totals(basket, tax=TaxConfig(vat_rate=0.08))
        assert totals.tax_amount == 3040.0
        assert totals.total == 41040.0

    @pytest.mark.unit
    def test_excise_by_category(self):
        """Test excise on categories that carry a rate."""
        items = [
            LineItem(product_id="wine", name="Rice wine", unit_price=50000.0, quantity=1, category="alcohol"),
            LineItem(product_id="tea", name="Tea", unit_price=8000.0, quantity=1, category="grocery"),
        ]
        tax = TaxConfig(vat_rate=0.10, excise_rates={"alcohol": 0.65})

        totals = compute_totals(items, tax=tax)
        assert totals.excise_amount == 32500.0
        assert totals.total == 96300.0

        discounted = compute_totals(items, Discount(10, is_percentage=True), tax=tax)
        assert discounted.excise_amount == 29250.0
        assert discounted.total == 86670.0

    @pytest.mark.unit
    def test_empty_basket(self):
        """Test that an empty basket totals zero."""
        totals = compute_totals([])
        assert totals.total == 0.0


class TestLoyaltyPoints:
    """Test cases for loyalty_points_for."""

    @pytest.mark.unit
    @pytest.mark.parametrize("total,points", [
        (9999.0, 0),
        (10000.0, 10),
        (33000.0, 33),
        (41800.0, 41),
    ])
    def test_default_rule(self, total, points):
        """Test 1 point per 1000 on orders of at least 10,000."""
        assert loyalty_points_for(total) == points

    @pytest.mark.unit
    def test_custom_rule(self):
        """Test a configured loyalty rule."""
        rule = LoyaltyConfig(points_per_unit=0.01, minimum_order=0)
        assert loyalty_points_for(250.0, rule) == 2
