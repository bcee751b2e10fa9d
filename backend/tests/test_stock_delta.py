"""
Stock delta resolver tests (pure, no store).
"""
import pytest

from core.errors import MalformedLineError, ValidationError
from core.stock_delta import normalize_lines, quantities_by_product, resolve_deltas
from models import CartLine


def line(product_id, quantity):
    return {"product_id": product_id, "quantity": quantity}


class TestResolveDeltas:

    def test_new_bill_consumes_every_line(self):
        assert resolve_deltas([], [line("a", 2), line("b", 1)]) == {"a": -2, "b": -1}

    def test_edit_increase_consumes_difference(self):
        # 5 -> 8 consumes three more
        assert resolve_deltas([line("x", 5)], [line("x", 8)]) == {"x": -3}

    def test_edit_decrease_restores_difference(self):
        assert resolve_deltas([line("x", 8)], [line("x", 5)]) == {"x": 3}

    def test_removed_line_restores_everything(self):
        assert resolve_deltas([line("x", 5), line("y", 1)], [line("y", 1)]) == {"x": 5}

    def test_line_cut_to_zero_is_a_removal(self):
        assert resolve_deltas([line("x", 5)], [line("x", 0)]) == {"x": 5}
        assert resolve_deltas([line("x", 5)], [line("x", -2)]) == {"x": 5}

    def test_unchanged_lines_produce_no_delta(self):
        lines = [line("a", 2), line("b", 7)]
        assert resolve_deltas(lines, lines) == {}

    def test_create_then_void_nets_to_zero(self):
        lines = [line("a", 2), line("b", 7), line("a", 1)]
        forward = resolve_deltas([], lines)
        backward = resolve_deltas(lines, [])
        for product_id in set(forward) | set(backward):
            assert forward.get(product_id, 0) + backward.get(product_id, 0) == 0

    def test_duplicate_product_lines_are_summed(self):
        assert resolve_deltas([], [line("a", 2), line("a", 3)]) == {"a": -5}

    def test_accepts_model_lines(self):
        assert resolve_deltas([], [CartLine(product_id="a", quantity=4)]) == {"a": -4}

    def test_result_order_follows_first_appearance(self):
        deltas = resolve_deltas([line("b", 1)], [line("c", 1), line("a", 1)])
        assert list(deltas) == ["b", "c", "a"]


class TestMalformedLines:

    def test_missing_product_reference(self):
        with pytest.raises(MalformedLineError):
            resolve_deltas([], [{"quantity": 1}])

    @pytest.mark.parametrize("quantity", [1.5, "2", None, True])
    def test_non_integer_quantity(self, quantity):
        with pytest.raises(MalformedLineError):
            resolve_deltas([], [line("a", quantity)])

    def test_negative_saved_quantity(self):
        with pytest.raises(MalformedLineError):
            resolve_deltas([line("a", -1)], [line("a", 1)])

    def test_malformed_is_a_validation_error(self):
        assert issubclass(MalformedLineError, ValidationError)


class TestHelpers:

    def test_normalize_drops_non_positive_lines(self):
        kept = normalize_lines([line("a", 0), line("b", 2), line("c", -1)])
        assert [l["product_id"] for l in kept] == ["b"]

    def test_quantities_by_product(self):
        assert quantities_by_product([line("a", 1), line("b", 0), line("a", 2)]) == {"a": 3}
