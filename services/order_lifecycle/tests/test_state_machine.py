import pytest

from app.aggregate import OrderStatus, PaymentStatus
from app.errors import IllegalTransition
from app.events import EventType, ExternalEvent, Provider, ProviderStatus
from app.state_machine import PAID_BUNDLE, PAYMENT_EDGES, SideEffect, transition


def _payment(status: ProviderStatus) -> ExternalEvent:
    return ExternalEvent(
        event_id=f"123:{status.value}",
        provider=Provider.MERCADOPAGO,
        event_type=EventType.PAYMENT,
        verified_status=status,
        order_reference="order-1",
        external_payment_reference="123",
    )


CONFIRMATION = ExternalEvent(
    event_id="confirm:order-1",
    provider=Provider.CONFIRMATION_LINK,
    event_type=EventType.DELIVERY_CONFIRMED,
    order_reference="order-1",
)


@pytest.mark.parametrize(
    "provider_status, payment_status, order_status",
    [
        (ProviderStatus.APPROVED, PaymentStatus.PAID, OrderStatus.PROCESSING),
        (ProviderStatus.PENDING, PaymentStatus.AWAITING_PAYMENT, OrderStatus.AWAITING_PAYMENT),
        (ProviderStatus.IN_PROCESS, PaymentStatus.AWAITING_PAYMENT, OrderStatus.AWAITING_PAYMENT),
        (ProviderStatus.AUTHORIZED, PaymentStatus.AWAITING_PAYMENT, OrderStatus.AWAITING_PAYMENT),
        (ProviderStatus.REJECTED, PaymentStatus.FAILED, OrderStatus.CANCELLED),
        (ProviderStatus.CANCELLED, PaymentStatus.FAILED, OrderStatus.CANCELLED),
    ],
)
def test_status_mapping_from_fresh_order(provider_status, payment_status, order_status):
    result = transition(OrderStatus.PENDING, PaymentStatus.PENDING, _payment(provider_status))

    assert result.changed
    assert result.payment_status == payment_status
    assert result.order_status == order_status


def test_approved_fires_paid_bundle_once():
    result = transition(
        OrderStatus.AWAITING_PAYMENT, PaymentStatus.PENDING, _payment(ProviderStatus.APPROVED)
    )

    assert result.outcome == "applied"
    assert result.side_effects == PAID_BUNDLE
    assert result.side_effects[0] == SideEffect.DECREMENT_STOCK


def test_approved_on_paid_order_is_noop():
    result = transition(OrderStatus.PROCESSING, PaymentStatus.PAID, _payment(ProviderStatus.APPROVED))

    assert result.outcome == "noop"
    assert not result.changed
    assert result.side_effects == ()


def test_no_direct_jump_from_pending_to_refunded():
    result = transition(OrderStatus.PENDING, PaymentStatus.PENDING, _payment(ProviderStatus.REFUNDED))

    assert result.outcome == "ignored"
    assert result.payment_status == PaymentStatus.PENDING
    assert result.order_status == OrderStatus.PENDING


def test_late_approved_after_refund_is_ignored():
    result = transition(OrderStatus.CANCELLED, PaymentStatus.REFUNDED, _payment(ProviderStatus.APPROVED))

    assert result.outcome == "ignored"
    assert result.side_effects == ()


def test_refund_of_paid_order_cancels_it():
    result = transition(OrderStatus.PROCESSING, PaymentStatus.PAID, _payment(ProviderStatus.REFUNDED))

    assert result.payment_status == PaymentStatus.REFUNDED
    assert result.order_status == OrderStatus.CANCELLED
    assert result.side_effects == ()


def test_chargeback_after_delivery_keeps_order_delivered():
    result = transition(
        OrderStatus.DELIVERED, PaymentStatus.PAID, _payment(ProviderStatus.CHARGED_BACK)
    )

    assert result.payment_status == PaymentStatus.REFUNDED
    assert result.order_status == OrderStatus.DELIVERED


def test_mediation_leaves_order_status_unchanged():
    result = transition(OrderStatus.SHIPPED, PaymentStatus.PAID, _payment(ProviderStatus.IN_MEDIATION))

    assert result.payment_status == PaymentStatus.DISPUTED
    assert result.order_status == OrderStatus.SHIPPED


@pytest.mark.parametrize("current", list(PaymentStatus))
@pytest.mark.parametrize("provider_status", list(ProviderStatus))
def test_payment_status_only_moves_along_edges(current, provider_status):
    result = transition(OrderStatus.PENDING, current, _payment(provider_status))

    if result.changed:
        assert result.payment_status in PAYMENT_EDGES[current]
    else:
        assert result.payment_status == current
    if result.side_effects:
        assert result.payment_status == PaymentStatus.PAID


@pytest.mark.parametrize("status", [OrderStatus.PROCESSING, OrderStatus.SHIPPED])
def test_confirmation_delivers_order(status):
    result = transition(status, PaymentStatus.PAID, CONFIRMATION)

    assert result.order_status == OrderStatus.DELIVERED
    assert result.payment_status == PaymentStatus.PAID
    assert result.mark_received
    assert result.side_effects == ()


def test_confirmation_of_delivered_order_is_noop():
    result = transition(OrderStatus.DELIVERED, PaymentStatus.PAID, CONFIRMATION)

    assert result.outcome == "noop"
    assert not result.mark_received


@pytest.mark.parametrize(
    "status", [OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED]
)
def test_confirmation_rejected_before_fulfilment(status):
    with pytest.raises(IllegalTransition):
        transition(status, PaymentStatus.PENDING, CONFIRMATION)
