"""Unit tests for free-form cost statement parsing."""

from __future__ import annotations

import pytest

from market_copilot.agents.cost_parser import parse_cost_statement, parse_money


@pytest.mark.parametrize(
    "text, expected",
    [
        ("cogs 8, shipping 3", {"cogs": 8.0, "ship_in": 3.0}),
        ("my cost of goods is $7.50 and inbound freight is 1.20", {"cogs": 7.5, "ship_in": 1.2}),
        ("$1.20 for inbound freight", {"ship_in": 1.2}),
        ("other costs are 0.50", {"other_costs": 0.5}),
        ("what if I sell at 27.99", {"price": 27.99}),
        ("COGS: $1,250.00", {"cogs": 1250.0}),
    ],
)
def test_labeled_amounts(text, expected):
    statement = parse_cost_statement(text)
    found = {k: v for k, v in vars(statement).items() if v is not None}
    assert found == pytest.approx(expected)


def test_specific_label_consumes_its_amount():
    statement = parse_cost_statement("shipping cost 3 and cost 8")
    assert statement.ship_in == 3.0
    assert statement.cogs == 8.0


def test_unlabeled_numbers_are_ignored():
    statement = parse_cost_statement("I think 42 is a nice number")
    assert statement.empty


def test_zero_price_is_not_a_price():
    assert parse_cost_statement("price 0").price is None


def test_statement_inputs_exclude_price():
    inputs = parse_cost_statement("cogs 8, price 24.99").inputs
    assert inputs.cogs == 8.0
    assert inputs.ship_in is None


def test_parse_money_takes_first_positive_amount():
    assert parse_money("$24.99 please") == 24.99
    assert parse_money("0 or 19") == 19.0
    assert parse_money("no idea") is None
