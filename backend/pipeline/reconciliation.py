# pipeline/reconciliation.py
# ============================================================================
# STRIPE PAYMENTS — ORDER RECONCILIATION ENGINE
# ============================================================================
# Charge and subscription creation for payment submissions, the per-event
# state transitions applied by the webhook dispatcher, and derived-order
# creation for checkout sessions. The only component that mutates orders.
# ============================================================================

import time
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog

from pipeline.errors import PaymentValidationError, ProviderCallError
from pipeline.stripe_client import IStripeClient
from schemas.orders import (
    Address,
    ChargeResult,
    CustomerRecord,
    Order,
    OrderStatus,
    PaymentForm,
    PaymentSubmission,
    SubscriptionResult,
    SubscriptionType,
    flatten_metadata,
)
from services.hooks import HookEvent, HookRegistry
from storage.order_store import (
    ICustomerStore,
    IMessageLog,
    IOrderStore,
    IPaymentFormStore,
    OrderPersistenceError,
)

CAPTURE_MESSAGE = "Webhook - Payment captured"
COMPLETED_CHARGE_STATUSES = {"succeeded"}
COMPLETED_SUBSCRIPTION_STATUSES = {"active", "trialing"}


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def from_cents(amount: Optional[int]) -> Decimal:
    return Decimal(amount or 0) / 100


def shipping_params(address: Address) -> Dict[str, Any]:
    return {
        "name": address.name,
        "address": {
            "city": address.city,
            "country": address.country,
            "line1": address.line1,
            "postal_code": address.zip,
            "state": address.state,
        },
    }


def address_from_shipping(details: Optional[Dict[str, Any]]) -> Address:
    """Address snapshot from a checkout session's shipping details"""
    if not details:
        return Address()
    address = details.get("address") or {}
    return Address(
        name=details.get("name") or "",
        line1=address.get("line1") or "",
        city=address.get("city") or "",
        state=address.get("state") or "",
        zip=address.get("postal_code") or "",
        country=address.get("country") or "",
        country_code=address.get("country") or "",
    )


class OrderReconciliationEngine:
    """
    Applies every order state transition.

    Provider failures never escape: they are logged with their category and
    surface as an empty ChargeResult / SubscriptionResult or an unchanged
    order. Persistence goes through ``save_order`` so the completion hook
    fires exactly when an order is stored in the completed state.
    """

    def __init__(
        self,
        stripe_client: IStripeClient,
        orders: IOrderStore,
        customers: ICustomerStore,
        messages: IMessageLog,
        forms: IPaymentFormStore,
        hooks: HookRegistry,
    ):
        self.stripe = stripe_client
        self.orders = orders
        self.customers = customers
        self.messages = messages
        self.forms = forms
        self.hooks = hooks
        self._logger = structlog.get_logger().bind(component="reconciliation_engine")

    def _provider_failed(self, operation: str, error: ProviderCallError, **context):
        self._logger.error(
            "provider_call_failed",
            operation=operation,
            category=error.category.value,
            error=error.message,
            **context,
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def save_order(self, order: Order, trigger_complete: bool = True) -> Order:
        """Persist ``order``; fire ORDER_COMPLETE when requested and the order is completed."""
        stored = await self.orders.save(order)
        if trigger_complete and stored.is_completed:
            await self.hooks.fire(HookEvent.ORDER_COMPLETE, order=stored)
        return stored

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def get_customer(self, email: str, test_mode: bool, token: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        """
        Resolve the provider customer for (email, test_mode).

        Returns the customer and whether it was created by this call. Two
        concurrent first payments for one email may both create a provider
        customer; the local cache keeps the last one written.
        """
        record = await self.customers.get(email, test_mode)
        if record:
            try:
                customer = self.stripe.retrieve_customer(record.stripe_id)
                if customer.get("id") and not customer.get("deleted"):
                    return customer, False
            except ProviderCallError as e:
                self._provider_failed("retrieve_customer", e, customer_id=record.stripe_id)

        customer = self.stripe.create_customer(email, token)
        await self.customers.save(CustomerRecord(email=email, stripe_id=customer["id"], test_mode=test_mode))
        self._logger.info("customer_created", customer_id=customer["id"], test_mode=test_mode)
        return customer, True

    # =========================================================================
    # CHARGES
    # =========================================================================

    async def create_charge(
        self,
        submission: PaymentSubmission,
        form: PaymentForm,
        customer: Dict[str, Any],
        is_new: bool,
    ) -> ChargeResult:
        params: Dict[str, Any] = {
            "amount": submission.amount,
            "currency": form.currency,
            "customer": customer["id"],
            "description": f"Order from {submission.email}",
            "metadata": flatten_metadata(submission.metadata),
        }
        if submission.address:
            params["shipping"] = shipping_params(submission.address)

        try:
            if not is_new and submission.token:
                self.stripe.attach_source(customer["id"], submission.token)
            charge = self.stripe.create_charge(params)
        except ProviderCallError as e:
            self._provider_failed("create_charge", e, email=submission.email)
            return ChargeResult(failure=e.category)

        return ChargeResult(transaction_id=charge.get("id"), status=charge.get("status"), charge=charge)

    async def asynchronous_charge(self, order: Order, source: Dict[str, Any]) -> Order:
        """Charge a delayed-payment source (iDEAL, SOFORT, ...) that became chargeable."""
        source_id = source.get("id")
        params = {
            "amount": source.get("amount") or to_cents(order.total_price),
            "currency": source.get("currency") or order.currency,
            "source": source_id,
            "description": f"Order from {order.email}",
            "metadata": {"order_number": order.number},
        }
        try:
            charge = self.stripe.create_charge(params)
        except ProviderCallError as e:
            self._provider_failed("asynchronous_charge", e, order_number=order.number, source_id=source_id)
            return order

        order.transaction_info = source_id
        order.stripe_transaction_id = charge["id"]
        order.payment_type = source.get("type")
        if charge.get("status") in COMPLETED_CHARGE_STATUSES:
            order.is_completed = True

        order = await self.save_order(order)
        self._logger.info(
            "asynchronous_charge_created",
            order_number=order.number,
            charge_id=charge["id"],
            source_type=order.payment_type,
            status=charge.get("status"),
        )
        return order

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def validate_plan_selection(self, submission: PaymentSubmission, form: PaymentForm) -> None:
        if not form.enable_subscriptions:
            return
        if form.subscription_type == SubscriptionType.SINGLE_PLAN:
            if not form.enable_custom_plan_amount and not form.single_plan_id:
                raise PaymentValidationError(["The payment form has no plan configured"])
            return
        if not submission.multi_plan_id:
            raise PaymentValidationError(["Plan Id is required"])
        if not form.offers_plan(submission.multi_plan_id):
            raise PaymentValidationError([f"Plan {submission.multi_plan_id} is not offered by this form"])

    async def create_subscription(
        self,
        submission: PaymentSubmission,
        form: PaymentForm,
        customer: Dict[str, Any],
        is_new: bool,
    ) -> SubscriptionResult:
        """
        Subscribe the customer according to the form configuration.

        Branches: single fixed plan, single plan with a custom amount,
        multiple selectable plans, and the recurring toggle of a one-time
        form. Returns an empty result when no branch applies.
        """
        self.validate_plan_selection(submission, form)

        plan_id: Optional[str] = None
        setup_fee: Optional[Decimal] = None
        try:
            if form.enable_subscriptions:
                if form.subscription_type == SubscriptionType.SINGLE_PLAN and not form.enable_custom_plan_amount:
                    plan_id = form.single_plan_id
                    setup_fee = form.single_plan_setup_fee
                    self.stripe.retrieve_plan(plan_id)
                elif form.subscription_type == SubscriptionType.SINGLE_PLAN:
                    if not submission.custom_plan_amount or submission.custom_plan_amount <= 0:
                        return SubscriptionResult()
                    setup_fee = form.single_plan_setup_fee
                    plan_id = self._create_custom_plan(submission, form)
                else:
                    plan_id = submission.multi_plan_id
                    setup_fee = form.setup_fee_for_plan(plan_id)
                    self.stripe.retrieve_plan(plan_id)
            elif submission.wants_recurring and submission.custom_amount and submission.custom_amount > 0:
                plan_id = self._create_recurring_plan(submission, form)
            else:
                return SubscriptionResult()

            if setup_fee:
                self.stripe.create_invoice_item(
                    customer["id"],
                    to_cents(setup_fee),
                    form.currency,
                    f"One-time setup fee: {form.name}",
                )

            source = None
            if not is_new and submission.token:
                source = self.stripe.attach_source(customer["id"], submission.token).get("id")

            subscription = self.stripe.create_subscription(
                customer["id"],
                plan_id,
                flatten_metadata(submission.metadata),
                source=source,
            )
        except ProviderCallError as e:
            self._provider_failed("create_subscription", e, email=submission.email, plan_id=plan_id)
            return SubscriptionResult(failure=e.category)

        return SubscriptionResult(
            transaction_id=subscription.get("id"),
            status=subscription.get("status"),
            subscription=subscription,
        )

    def _create_custom_plan(self, submission: PaymentSubmission, form: PaymentForm) -> str:
        plan_id = str(int(time.time()))
        params: Dict[str, Any] = {
            "id": plan_id,
            "amount": submission.amount,
            "currency": form.currency,
            "interval": form.custom_plan_frequency,
            "interval_count": form.custom_plan_interval,
            "product": {"name": f"Custom Plan from: {submission.email}"},
        }
        if form.single_plan_trial_period:
            params["trial_period_days"] = form.single_plan_trial_period
        self.stripe.create_plan(params)
        return plan_id

    def _create_recurring_plan(self, submission: PaymentSubmission, form: PaymentForm) -> str:
        plan_id = str(int(time.time()))
        self.stripe.create_plan({
            "id": plan_id,
            "amount": submission.amount,
            "currency": form.currency,
            "interval": form.recurring_payment_type,
            "product": {"name": f"Plan for recurring payment from: {submission.email}"},
        })
        return plan_id

    # =========================================================================
    # PAYMENT SUBMISSION
    # =========================================================================

    def populate_order(self, submission: PaymentSubmission, form: PaymentForm) -> Order:
        return Order(
            order_status_id=OrderStatus.NEW,
            email=submission.email,
            total_price=from_cents(submission.amount),
            quantity=submission.quantity,
            shipping=submission.shipping_amount,
            tax=submission.tax_amount,
            discount=submission.discount_amount,
            address=submission.address.model_copy() if submission.address else Address(),
            test_mode=submission.test_mode,
            variants=flatten_metadata(submission.metadata),
            post_data=submission.model_dump(mode="json", by_alias=True, exclude={"token"}),
            currency=form.currency,
            form_id=form.id,
        )

    async def process_payment(self, submission: PaymentSubmission) -> Optional[Order]:
        """
        Charge or subscribe for a posted payment form and persist the order.

        Returns None when no transaction was produced or local persistence
        failed. Raises PaymentValidationError for malformed submissions.
        """
        if not submission.token or submission.form_id is None:
            raise PaymentValidationError(["Unable to get the stripe token or formId"])

        form = await self.forms.get_by_id(submission.form_id)
        if form is None:
            raise PaymentValidationError(["Unable to find the Stripe Button associated to the order"])
        self.validate_plan_selection(submission, form)

        order = self.populate_order(submission, form)
        log = self._logger.bind(order_number=order.number, form_id=form.id)

        try:
            customer, is_new = await self.get_customer(submission.email, submission.test_mode, submission.token)
        except ProviderCallError as e:
            self._provider_failed("get_customer", e, email=submission.email)
            return None

        result = await self.create_subscription(submission, form, customer, is_new)
        if result.succeeded:
            order.stripe_transaction_id = result.transaction_id
            order.is_subscription = True
            order.subscription_status = result.status
            order.is_completed = result.status in COMPLETED_SUBSCRIPTION_STATUSES
        elif not form.enable_subscriptions and result.failure is None:
            charge = await self.create_charge(submission, form, customer, is_new)
            if charge.succeeded:
                order.stripe_transaction_id = charge.transaction_id
                order.payment_type = (charge.charge.get("payment_method_details") or {}).get("type")
                order.is_completed = charge.status in COMPLETED_CHARGE_STATUSES

        if not order.stripe_transaction_id:
            log.error("payment_not_completed")
            return None

        save_form = not form.has_unlimited_stock and form.quantity > 0
        if save_form:
            form.quantity -= order.quantity

        try:
            order = await self.save_order(order)
        except OrderPersistenceError as e:
            log.error("order_save_failed", transaction_id=order.stripe_transaction_id, error=str(e))
            return None

        if save_form:
            try:
                await self.forms.save(form)
            except OrderPersistenceError as e:
                log.error("stock_update_failed", remaining=form.quantity, error=str(e))
                return None

        log.info("order_created", transaction_id=order.stripe_transaction_id, completed=order.is_completed)
        return order

    # =========================================================================
    # WEBHOOK TRANSITIONS
    # =========================================================================

    async def complete_order(self, order: Order) -> Tuple[Order, bool]:
        """pending -> completed. Returns the order and whether it changed."""
        if order.is_completed:
            self._logger.info("order_already_completed", order_number=order.number)
            return order, False
        order.is_completed = True
        order = await self.save_order(order)
        self._logger.info("order_completed", order_number=order.number)
        return order, True

    async def capture_order(self, order: Order, charge: Dict[str, Any]) -> Tuple[Order, bool]:
        """
        Manual-capture completion. Saves without the completion hook and
        notifies ORDER_CAPTURE once per order.
        """
        previous = await self.messages.list_for_order(order.id)
        if any(m.message == CAPTURE_MESSAGE for m in previous):
            self._logger.info("order_already_captured", order_number=order.number)
            return order, False

        order.is_completed = True
        order = await self.save_order(order, trigger_complete=False)
        await self.messages.append(order.id, CAPTURE_MESSAGE, charge)
        await self.hooks.fire(HookEvent.ORDER_CAPTURE, order=order)
        self._logger.info("order_captured", order_number=order.number, charge_id=charge.get("id"))
        return order, True

    # =========================================================================
    # CHECKOUT-DERIVED ORDERS
    # =========================================================================

    async def derive_order_from_checkout(self, session: Dict[str, Any]) -> Tuple[Optional[Order], bool]:
        """
        Build the order for a completed checkout session from its payment
        intent, or from its subscription when there is no payment intent.

        Returns the order (None when neither resolves) and whether it was
        created by this call. A redelivered session yields the stored order.
        """
        payment_intent_id = session.get("payment_intent")
        if payment_intent_id:
            try:
                intent = self.stripe.retrieve_payment_intent(payment_intent_id)
            except ProviderCallError as e:
                self._provider_failed("retrieve_payment_intent", e, payment_intent_id=payment_intent_id)
                return None, False
            return await self.create_order_from_payment_intent(intent, session)

        subscription_id = session.get("subscription")
        if subscription_id:
            try:
                subscription = self.stripe.retrieve_subscription(subscription_id)
            except ProviderCallError as e:
                self._provider_failed("retrieve_subscription", e, subscription_id=subscription_id)
                return None, False
            return await self.create_order_from_subscription(subscription, session)

        return None, False

    def _metadata_int(self, metadata: Dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
        value = metadata.get(key)
        if value in (None, ""):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            self._logger.warning("checkout_metadata_invalid", key=key, value=str(value))
            return default

    def _checkout_order(self, session: Dict[str, Any], transaction_id: str) -> Order:
        metadata = session.get("metadata")
        metadata = metadata if isinstance(metadata, dict) else {}
        details = session.get("customer_details")
        details = details if isinstance(details, dict) else {}
        quantity = self._metadata_int(metadata, "quantity", 1)
        return Order(
            stripe_transaction_id=transaction_id,
            email=details.get("email") or session.get("customer_email"),
            quantity=quantity if quantity and quantity > 0 else 1,
            form_id=self._metadata_int(metadata, "form_id", None),
            address=address_from_shipping(session.get("shipping_details") or session.get("shipping")),
            test_mode=not session.get("livemode", False),
            variants=flatten_metadata(metadata),
        )

    async def _store_derived(self, order: Order) -> Tuple[Order, bool]:
        try:
            return await self.save_order(order), True
        except OrderPersistenceError:
            # lost the insert race against a concurrent delivery
            existing = await self.orders.get_by_transaction_id(order.stripe_transaction_id)
            if existing is None:
                raise
            self._logger.info("derived_order_exists", transaction_id=order.stripe_transaction_id)
            return existing, False

    async def create_order_from_payment_intent(
        self,
        intent: Dict[str, Any],
        session: Dict[str, Any],
    ) -> Tuple[Order, bool]:
        existing = await self.orders.get_by_transaction_id(intent["id"])
        if existing:
            self._logger.info("derived_order_exists", transaction_id=intent["id"])
            return existing, False

        order = self._checkout_order(session, intent["id"])
        order.total_price = from_cents(intent.get("amount"))
        order.currency = intent.get("currency") or session.get("currency") or order.currency
        order.payment_type = (intent.get("payment_method_types") or [None])[0]
        order.is_completed = session.get("payment_status") == "paid" or intent.get("status") == "succeeded"

        order, created = await self._store_derived(order)
        self._logger.info("order_derived", source="payment_intent", order_number=order.number, transaction_id=intent["id"])
        return order, created

    async def create_order_from_subscription(
        self,
        subscription: Dict[str, Any],
        session: Dict[str, Any],
    ) -> Tuple[Order, bool]:
        existing = await self.orders.get_by_transaction_id(subscription["id"])
        if existing:
            self._logger.info("derived_order_exists", transaction_id=subscription["id"])
            return existing, False

        order = self._checkout_order(session, subscription["id"])
        plan = subscription.get("plan")
        if not plan:
            items = (subscription.get("items") or {}).get("data") or [{}]
            plan = items[0].get("plan") or {}
        if session.get("amount_total") is not None:
            order.total_price = from_cents(session["amount_total"])
        else:
            order.total_price = from_cents(plan.get("amount")) * (subscription.get("quantity") or order.quantity)
        order.currency = session.get("currency") or plan.get("currency") or order.currency
        order.is_subscription = True
        order.subscription_status = subscription.get("status")
        order.is_completed = True

        order, created = await self._store_derived(order)
        self._logger.info("order_derived", source="subscription", order_number=order.number, transaction_id=subscription["id"])
        return order, created
