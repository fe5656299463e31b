"""Deferred effect dispatcher.

Hands the checkout-completed effect to the booking worker by staging an outbox
row inside the ingestor's own transaction; the background publisher moves it
to Kafka. No business logic lives here.
"""

from sqlalchemy.exc import SQLAlchemyError

from mentorsaga.common.errors import TransientExternalError
from mentorsaga.common.events import KafkaBus
from mentorsaga.common.outbox import enqueue_event, publish_outbox_forever
from mentorsaga.services.payments.schemas import CheckoutDispatch

CHECKOUT_COMPLETED_TOPIC = "checkout.completed"


class DispatchError(TransientExternalError):
    """The effect could not be durably handed off; the webhook must be retried."""


class DeferredEffectDispatcher:
    def __init__(self, session_factory, bus: KafkaBus | None = None, service_name: str = "payments") -> None:
        self.session_factory = session_factory
        self.bus = bus or KafkaBus()
        self.service_name = service_name

    def dispatch(self, db, dispatch: CheckoutDispatch, trace_id: str) -> None:
        try:
            enqueue_event(
                db,
                CHECKOUT_COMPLETED_TOPIC,
                aggregate_id=dispatch.payment_id,
                trace_id=trace_id,
                payload=dispatch.model_dump(mode="json", by_alias=True),
            )
            db.flush()
        except SQLAlchemyError as exc:
            raise DispatchError(f"could not stage {CHECKOUT_COMPLETED_TOPIC} for payment {dispatch.payment_id}") from exc

    async def run_publisher(self) -> None:
        await publish_outbox_forever(self.session_factory, self.bus, self.service_name)

    async def close(self) -> None:
        await self.bus.close()
