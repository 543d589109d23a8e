import pytest

from eventpulse.core.errors import ClientInputError
from eventpulse.services.analytics import compute_funnel


def test_conversion_is_relative_to_previous_step():
    funnel = compute_funnel(["page_view", "signup", "purchase"], [1000, 300, 45])

    assert [step.conversion_rate for step in funnel] == [100.0, 30.0, 15.0]
    assert [step.step for step in funnel] == [1, 2, 3]
    assert funnel[2].users == 45


def test_rates_rounded_to_two_decimals():
    funnel = compute_funnel(["a", "b"], [3, 1])
    assert funnel[1].conversion_rate == 33.33


def test_empty_previous_step_gives_zero_rate():
    funnel = compute_funnel(["a", "b", "c"], [10, 0, 0])
    assert [step.conversion_rate for step in funnel] == [100.0, 0.0, 0.0]


def test_first_step_is_always_full_even_without_users():
    funnel = compute_funnel(["a", "b"], [0, 0])
    assert funnel[0].conversion_rate == 100.0


def test_single_step_rejected():
    with pytest.raises(ClientInputError) as exc_info:
        compute_funnel(["only"], [5])
    assert exc_info.value.field == "events"
