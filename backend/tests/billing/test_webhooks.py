"""
Stripe webhook reconciliation tests

1. Redelivered events converge on one subscription row and one grant
2. Limits are a pure function of the price id and the entitled status
3. Cancellation and failed payments revoke entitlement
4. Foreign-domain, unknown and failing events are acknowledged, never retried
5. The event journal dedupes concurrent and repeated deliveries

Run with: pytest tests/billing/test_webhooks.py -v
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from viraloop.utils.config import config
from viraloop.billing.config import LedgerEntryType, get_plan_limits_from_price_id, is_entitled
from viraloop.billing.external.stripe.webhooks import WebhookService
from viraloop.billing.repo import ledger, subscriptions as subscriptions_repo, teams as teams_repo
from viraloop.billing.repo.webhook_events import WebhookLock
from tests.billing.fakes import make_event, price_id, stripe_subscription

GROWTH_LIMITS = {'influencer_limit': 5, 'image_limit': 100, 'video_limit': 20}
PRO_LIMITS = {'influencer_limit': 15, 'image_limit': 233, 'video_limit': 46}
ZERO_LIMITS = {'influencer_limit': 0, 'image_limit': 0, 'video_limit': 0}


def limits_of(team):
    return {key: team[key] for key in ('influencer_limit', 'image_limit', 'video_limit')}


def checkout_session(team_id, session_id="cs_1", subscription="sub_123", **overrides):
    session = {
        'id': session_id,
        'object': 'checkout.session',
        'subscription': subscription,
        'client_reference_id': 'user_1',
        'customer': 'cus_123',
        'invoice': 'in_1',
        'amount_total': 2900,
        'currency': 'usd',
        'payment_intent': None,
        'payment_status': 'paid',
        'metadata': {'team': team_id, 'domain': 'viraloop.io'},
    }
    session.update(overrides)
    return session


async def ledger_rows(db, team_id):
    async with db.session() as session:
        return await ledger.list_entries(session, team_id)


@pytest.mark.billing
class TestSubscriptionCheckout:
    @pytest.mark.asyncio
    async def test_redelivered_checkout_creates_one_row(self, db, webhook_service, fake_stripe, make_team, get_team, get_subscription):
        team = await make_team(credits=0)
        fake_stripe.subscriptions['sub_123'] = stripe_subscription()
        session = checkout_session(team['id'])

        first = await webhook_service.dispatch(make_event("checkout.session.completed", session, "evt_1"))
        second = await webhook_service.dispatch(make_event("checkout.session.completed", session, "evt_2"))

        assert first['status'] == 'success'
        assert first['credits_added'] == 300
        assert second['message'] == 'Subscription already created for this session'

        subscription = await get_subscription('sub_123')
        assert subscription['team_id'] == team['id']
        assert subscription['plan'] == "Growth (monthly)"
        assert subscription['stripe_subscription_status'] == 'active'
        assert subscription['stripe_hosted_invoice_url'] == "https://invoice.test/in_1"

        team_row = await get_team(team['id'])
        assert team_row['credits'] == 300
        assert limits_of(team_row) == GROWTH_LIMITS
        assert len(await ledger_rows(db, team['id'])) == 1

    @pytest.mark.asyncio
    async def test_subscription_created_after_checkout_is_a_no_op(self, db, webhook_service, fake_stripe, make_team, get_team):
        team = await make_team(credits=0)
        fake_stripe.subscriptions['sub_123'] = stripe_subscription(metadata={'team': team['id'], 'client_reference_id': 'user_1'})

        await webhook_service.dispatch(make_event("checkout.session.completed", checkout_session(team['id']), "evt_1"))
        result = await webhook_service.dispatch(
            make_event("customer.subscription.created", fake_stripe.subscriptions['sub_123'], "evt_2")
        )

        assert result['message'] == 'Subscription already exists'
        assert (await get_team(team['id']))['credits'] == 300
        assert len(await ledger_rows(db, team['id'])) == 1

    @pytest.mark.asyncio
    async def test_subscription_created_first_then_checkout(self, db, webhook_service, fake_stripe, make_team, get_team):
        team = await make_team(credits=0)
        fake_stripe.subscriptions['sub_123'] = stripe_subscription(metadata={'team': team['id'], 'client_reference_id': 'user_1'})

        created = await webhook_service.dispatch(
            make_event("customer.subscription.created", fake_stripe.subscriptions['sub_123'], "evt_1")
        )
        checkout = await webhook_service.dispatch(make_event("checkout.session.completed", checkout_session(team['id']), "evt_2"))

        assert created['credits_added'] == 300
        assert checkout['message'] == 'Subscription already created for this session'
        assert (await get_team(team['id']))['credits'] == 300

    @pytest.mark.asyncio
    async def test_subscription_created_without_client_reference(self, webhook_service, get_subscription):
        result = await webhook_service.dispatch(
            make_event("customer.subscription.created", stripe_subscription(metadata={}), "evt_1")
        )
        assert result['status'] == 'ignored'
        assert await get_subscription('sub_123') is None

    @pytest.mark.asyncio
    async def test_incomplete_subscription_is_not_entitled(self, webhook_service, fake_stripe, make_team, get_team):
        team = await make_team(credits=0)
        fake_stripe.subscriptions['sub_123'] = stripe_subscription(status='incomplete')

        result = await webhook_service.dispatch(make_event("checkout.session.completed", checkout_session(team['id'])))

        assert result['credits_added'] == 0
        team_row = await get_team(team['id'])
        assert team_row['credits'] == 0
        assert limits_of(team_row) == ZERO_LIMITS


@pytest.mark.billing
class TestCreditPurchase:
    @pytest.mark.asyncio
    async def test_credit_purchase_applies_once(self, db, webhook_service, make_team, get_team):
        team = await make_team(credits=5)
        session = checkout_session(
            team['id'],
            session_id="cs_credits",
            subscription=None,
            amount_total=1000,
            metadata={'team': team['id'], 'type': 'credits', 'amount': '1000'},
        )

        first = await webhook_service.dispatch(make_event("checkout.session.completed", session, "evt_1"))
        second = await webhook_service.dispatch(make_event("checkout.session.completed", session, "evt_2"))

        assert first['applied'] is True
        assert first['credits_added'] == 100
        assert second['applied'] is False
        assert (await get_team(team['id']))['credits'] == 105

        async with db.session() as session_:
            entry = await ledger.get_by_idempotency_key(session_, "checkout_credits_cs_credits")
        assert entry['type'] == LedgerEntryType.TOPUP.value
        assert entry['stripe_session_id'] == "cs_credits"
        assert entry['amount_total'] == 1000

    @pytest.mark.asyncio
    async def test_credit_purchase_with_bad_amount(self, webhook_service, make_team, get_team):
        team = await make_team(credits=0)
        session = checkout_session(team['id'], subscription=None, metadata={'team': team['id'], 'type': 'credits', 'amount': 'ten'})

        result = await webhook_service.dispatch(make_event("checkout.session.completed", session))

        assert result['status'] == 'ignored'
        assert (await get_team(team['id']))['credits'] == 0

    @pytest.mark.asyncio
    async def test_credits_metadata_on_other_events_is_ignored(self, webhook_service):
        invoice = {'id': 'in_1', 'subscription': 'sub_123', 'metadata': {'type': 'credits'}}
        result = await webhook_service.dispatch(make_event("invoice.paid", invoice))
        assert result['status'] == 'ignored'


@pytest.mark.billing
class TestOneTimePurchase:
    def trial_session(self, team_id):
        return checkout_session(
            team_id,
            session_id="cs_trial",
            subscription=None,
            payment_intent="pi_trial",
            amount_total=100,
            metadata={'team': team_id, 'isOneTime': 'true', 'stripePriceId': price_id("Trial")},
        )

    def trial_payment_intent(self, team_id):
        return {
            'id': 'pi_trial',
            'object': 'payment_intent',
            'amount': 100,
            'metadata': {'team': team_id, 'isOneTime': 'true', 'stripePriceId': price_id("Trial")},
        }

    @pytest.mark.asyncio
    async def test_trial_sets_limits_without_credits(self, webhook_service, make_team, get_team):
        team = await make_team(credits=0)

        result = await webhook_service.dispatch(make_event("checkout.session.completed", self.trial_session(team['id'])))

        assert result['credits_added'] == 0
        team_row = await get_team(team['id'])
        assert limits_of(team_row) == {'influencer_limit': 1, 'image_limit': 1, 'video_limit': 1}
        assert team_row['credits'] == 0

    @pytest.mark.asyncio
    async def test_trial_credits_granted_once_across_events(self, webhook_service, make_team, get_team):
        team = await make_team(credits=0)

        with patch.object(config, "GRANT_TRIAL_CREDITS", True):
            await webhook_service.dispatch(make_event("checkout.session.completed", self.trial_session(team['id']), "evt_1"))
            await webhook_service.dispatch(make_event("payment_intent.succeeded", self.trial_payment_intent(team['id']), "evt_2"))

        assert (await get_team(team['id']))['credits'] == 20

    @pytest.mark.asyncio
    async def test_trial_purchase_creates_entitled_trial_row(self, db, webhook_service, make_team, get_subscription):
        team = await make_team(credits=0)

        await webhook_service.dispatch(make_event("checkout.session.completed", self.trial_session(team['id'])))

        trial = await get_subscription("trial_pi_trial")
        assert trial['type'] == "trial"
        assert trial['team_id'] == team['id']
        assert trial['plan'] == "Trial"
        assert trial['stripe_subscription_status'] == "active"
        assert trial['payment_intent_id'] == "pi_trial"
        now = datetime.now(timezone.utc)
        assert trial['subscription_valid_until'] > now + timedelta(days=360)

        async with db.session() as session:
            latest = await subscriptions_repo.get_latest_for_team(session, team['id'])
        assert latest['id'] == trial['id']
        assert is_entitled(latest, now) is True

    @pytest.mark.asyncio
    async def test_both_payment_events_create_one_trial_row(self, db, webhook_service, make_team, get_subscription):
        team = await make_team(credits=0)

        await webhook_service.dispatch(make_event("checkout.session.completed", self.trial_session(team['id']), "evt_1"))
        await webhook_service.dispatch(make_event("payment_intent.succeeded", self.trial_payment_intent(team['id']), "evt_2"))

        trial = await get_subscription("trial_pi_trial")
        async with db.session() as session:
            assert (await subscriptions_repo.get_trial_for_team(session, team['id']))['id'] == trial['id']

    @pytest.mark.asyncio
    async def test_second_trial_purchase_keeps_first_row(self, webhook_service, make_team, get_subscription):
        team = await make_team(credits=0)
        second = {**self.trial_payment_intent(team['id']), 'id': 'pi_trial_again'}

        await webhook_service.dispatch(make_event("payment_intent.succeeded", self.trial_payment_intent(team['id']), "evt_1"))
        result = await webhook_service.dispatch(make_event("payment_intent.succeeded", second, "evt_2"))

        assert result['status'] == 'success'
        assert await get_subscription("trial_pi_trial") is not None
        assert await get_subscription("trial_pi_trial_again") is None

    @pytest.mark.asyncio
    async def test_concurrent_payment_events_create_one_trial_row(self, webhook_service, make_team, get_team, get_subscription):
        team = await make_team(credits=0)

        with patch.object(config, "GRANT_TRIAL_CREDITS", True):
            results = await asyncio.gather(
                webhook_service.dispatch(make_event("checkout.session.completed", self.trial_session(team['id']), "evt_1")),
                webhook_service.dispatch(make_event("payment_intent.succeeded", self.trial_payment_intent(team['id']), "evt_2")),
            )

        assert all(result['status'] == 'success' and 'error' not in result for result in results)
        assert await get_subscription("trial_pi_trial") is not None
        assert (await get_team(team['id']))['credits'] == 20

    @pytest.mark.asyncio
    async def test_trial_for_unknown_team_creates_no_row(self, webhook_service, get_subscription):
        await webhook_service.dispatch(make_event("checkout.session.completed", self.trial_session("missing")))
        assert await get_subscription("trial_pi_trial") is None

    @pytest.mark.asyncio
    async def test_recurring_payment_intent_is_ignored(self, webhook_service, make_team):
        team = await make_team(credits=0)
        intent = {'id': 'pi_sub', 'object': 'payment_intent', 'amount': 2900, 'metadata': {'team': team['id']}}

        result = await webhook_service.dispatch(make_event("payment_intent.succeeded", intent))

        assert result['status'] == 'ignored'

    @pytest.mark.asyncio
    async def test_one_time_without_price_is_ignored(self, webhook_service, make_team, get_team):
        team = await make_team(credits=0)
        session = checkout_session(team['id'], subscription=None, metadata={'team': team['id'], 'isOneTime': 'true'})

        result = await webhook_service.dispatch(make_event("checkout.session.completed", session))

        assert result['status'] == 'ignored'
        assert limits_of(await get_team(team['id'])) == ZERO_LIMITS


@pytest.mark.billing
class TestSubscriptionUpdates:
    @pytest.mark.asyncio
    async def test_plan_change_recomputes_limits(self, webhook_service, make_team, make_subscription, get_team, get_subscription):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])
        period_end = datetime.now(timezone.utc) + timedelta(days=30)
        updated = stripe_subscription(price=price_id("Pro (monthly)"), period_end=period_end)

        await webhook_service.dispatch(make_event("customer.subscription.updated", updated, "evt_1"))
        after_first = limits_of(await get_team(team['id']))
        await webhook_service.dispatch(make_event("customer.subscription.updated", updated, "evt_2"))
        after_second = limits_of(await get_team(team['id']))

        assert after_first == PRO_LIMITS
        assert after_second == after_first

        subscription = await get_subscription('sub_123')
        assert subscription['plan'] == "Pro (monthly)"
        assert subscription['stripe_price_id'] == price_id("Pro (monthly)")
        assert subscription['subscription_valid_until'] == period_end.replace(microsecond=0)

    @pytest.mark.asyncio
    async def test_update_resets_usage_counters(self, db, webhook_service, make_team, make_subscription, get_team):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])

        async with db.transaction() as session:
            await teams_repo.set_plan_limits(session, team['id'], get_plan_limits_from_price_id(price_id("Growth (monthly)")))
            await teams_repo.increment_usage(session, team['id'], "image")

        await webhook_service.dispatch(make_event("customer.subscription.updated", stripe_subscription()))

        assert (await get_team(team['id']))['images_used_this_month'] == 0

    @pytest.mark.asyncio
    async def test_update_before_create_is_dropped(self, webhook_service, get_subscription):
        result = await webhook_service.dispatch(make_event("customer.subscription.updated", stripe_subscription()))

        assert result == {'status': 'success', 'message': 'No matching subscription found'}
        assert await get_subscription('sub_123') is None

    @pytest.mark.asyncio
    async def test_past_due_revokes_limits(self, webhook_service, make_team, make_subscription, get_team, get_subscription):
        team = await make_team(credits=40)
        await make_subscription(team_id=team['id'])

        await webhook_service.dispatch(make_event("customer.subscription.updated", stripe_subscription(status='past_due')))

        team_row = await get_team(team['id'])
        assert limits_of(team_row) == ZERO_LIMITS
        assert team_row['credits'] == 40
        subscription = await get_subscription('sub_123')
        assert subscription['subscription_valid_until'] <= datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_deleted_revokes_entitlement(self, webhook_service, make_team, make_subscription, get_team, get_subscription):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])

        await webhook_service.dispatch(make_event("customer.subscription.deleted", stripe_subscription(status='canceled')))

        subscription = await get_subscription('sub_123')
        assert subscription['stripe_subscription_status'] == 'canceled'
        assert subscription['subscription_valid_until'] <= datetime.now(timezone.utc)
        assert limits_of(await get_team(team['id'])) == ZERO_LIMITS


@pytest.mark.billing
class TestInvoices:
    @pytest.mark.asyncio
    async def test_invoice_paid_extends_validity(self, webhook_service, fake_stripe, make_team, make_subscription, get_subscription, get_team):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])
        period_end = datetime.now(timezone.utc) + timedelta(days=60)
        fake_stripe.subscriptions['sub_123'] = stripe_subscription(period_end=period_end)
        invoice = {'id': 'in_2', 'subscription': 'sub_123', 'total': 2900, 'currency': 'usd', 'status': 'paid', 'metadata': {}}

        await webhook_service.dispatch(make_event("invoice.paid", invoice))

        subscription = await get_subscription('sub_123')
        assert subscription['subscription_valid_until'] == period_end.replace(microsecond=0)
        assert subscription['stripe_invoice'] == 'in_2'
        assert limits_of(await get_team(team['id'])) == GROWTH_LIMITS
        # Renewal credits come from the monthly job, not the invoice
        assert (await get_team(team['id']))['credits'] == 0

    @pytest.mark.asyncio
    async def test_invoice_subscription_from_parent_details(self, webhook_service, fake_stripe, make_team, make_subscription, get_subscription):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])
        fake_stripe.subscriptions['sub_123'] = stripe_subscription()
        invoice = {'id': 'in_3', 'parent': {'subscription_details': {'subscription': 'sub_123'}}, 'metadata': {}}

        await webhook_service.dispatch(make_event("invoice.paid", invoice))

        assert (await get_subscription('sub_123'))['stripe_invoice'] == 'in_3'


    @pytest.mark.asyncio
    async def test_payment_requiring_action_leaves_subscription(self, webhook_service, fake_stripe, make_team, make_subscription, get_team, get_subscription, db):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])
        async with db.transaction() as session:
            await teams_repo.set_plan_limits(session, team['id'], get_plan_limits_from_price_id(price_id("Growth (monthly)")))
        fake_stripe.subscriptions['sub_123'] = stripe_subscription()
        fake_stripe.payment_intents['pi_1'] = {'id': 'pi_1', 'status': 'requires_action'}
        invoice = {'id': 'in_4', 'subscription': 'sub_123', 'payment_intent': 'pi_1', 'metadata': {}}

        result = await webhook_service.dispatch(make_event("invoice.payment_failed", invoice))

        assert result['message'] == 'Payment requires action'
        assert fake_stripe.cancelled == []
        assert (await get_subscription('sub_123'))['stripe_subscription_status'] == 'active'
        assert limits_of(await get_team(team['id'])) == GROWTH_LIMITS

    @pytest.mark.asyncio
    async def test_declined_payment_cancels_and_revokes(self, webhook_service, fake_stripe, make_team, make_subscription, get_team, get_subscription):
        team = await make_team(credits=50)
        await make_subscription(team_id=team['id'])
        fake_stripe.subscriptions['sub_123'] = stripe_subscription()
        fake_stripe.payment_intents['pi_2'] = {'id': 'pi_2', 'status': 'requires_payment_method'}
        invoice = {'id': 'in_5', 'subscription': 'sub_123', 'payment_intent': 'pi_2', 'status': 'open', 'metadata': {}}

        await webhook_service.dispatch(make_event("invoice.payment_failed", invoice))

        assert fake_stripe.cancelled == ['sub_123']
        subscription = await get_subscription('sub_123')
        assert subscription['stripe_subscription_status'] == 'canceled'
        assert subscription['subscription_valid_until'] <= datetime.now(timezone.utc)
        team_row = await get_team(team['id'])
        assert limits_of(team_row) == ZERO_LIMITS
        assert team_row['credits'] == 50

    @pytest.mark.asyncio
    async def test_failed_payment_when_cancel_is_refused(self, webhook_service, fake_stripe, make_team, make_subscription, get_subscription):
        team = await make_team(credits=0)
        await make_subscription(team_id=team['id'])
        # Not known to the provider: cancel and retrieve both refuse, the handler error is acknowledged
        invoice = {'id': 'in_6', 'subscription': 'sub_123', 'metadata': {}}

        result = await webhook_service.dispatch(make_event("invoice.payment_failed", invoice))

        assert result['status'] == 'success'
        assert result['error'] == 'processed_with_errors'
        assert (await get_subscription('sub_123'))['stripe_subscription_status'] == 'active'


@pytest.mark.billing
class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_event_type_is_ignored(self, webhook_service):
        result = await webhook_service.dispatch(make_event("charge.refunded", {'id': 'ch_1', 'metadata': {}}))
        assert result['status'] == 'ignored'

    @pytest.mark.asyncio
    async def test_foreign_domain_is_ignored(self, webhook_service, fake_stripe, make_team, get_subscription):
        team = await make_team(credits=0)
        fake_stripe.subscriptions['sub_123'] = stripe_subscription()
        session = checkout_session(team['id'], metadata={'team': team['id'], 'domain': 'other-product.io'})

        result = await webhook_service.dispatch(make_event("checkout.session.completed", session))

        assert result['status'] == 'ignored'
        assert fake_stripe.calls == []
        assert await get_subscription('sub_123') is None

    @pytest.mark.asyncio
    async def test_handler_error_is_acknowledged(self, webhook_service, make_team):
        team = await make_team(credits=0)
        # The provider does not know sub_123, so retrieval fails inside the handler
        result = await webhook_service.dispatch(make_event("checkout.session.completed", checkout_session(team['id'])))

        assert result['status'] == 'success'
        assert result['error'] == 'processed_with_errors'
        assert 'InvalidRequestError' in result['message']

    @pytest.mark.asyncio
    async def test_every_event_type_has_a_route(self, db, credit_manager, fake_stripe):
        service = WebhookService(db, credit_manager, fake_stripe)
        assert len(service._routes) == 7


@pytest.mark.billing
class TestProcessWebhook:
    @pytest.mark.asyncio
    async def test_same_event_processed_once(self, db, webhook_service, make_team, get_team):
        team = await make_team(credits=0)
        session = checkout_session(
            team['id'],
            session_id="cs_credits",
            subscription=None,
            metadata={'team': team['id'], 'type': 'credits', 'amount': '500'},
        )
        payload = json.dumps(make_event("checkout.session.completed", session, "evt_dup")).encode()

        first = await webhook_service.process_stripe_webhook(payload, None)
        second = await webhook_service.process_stripe_webhook(payload, None)

        assert first['credits_added'] == 50
        assert 'already_completed' in second['message']
        assert (await get_team(team['id']))['credits'] == 50
        assert await WebhookLock(db).get_status("evt_dup") == "completed"

    @pytest.mark.asyncio
    async def test_failed_event_can_be_retried(self, db, webhook_service, fake_stripe, make_team, get_subscription):
        team = await make_team(credits=0)
        payload = json.dumps(make_event("checkout.session.completed", checkout_session(team['id']), "evt_retry")).encode()

        first = await webhook_service.process_stripe_webhook(payload, None)
        assert first['error'] == 'processed_with_errors'
        assert await WebhookLock(db).get_status("evt_retry") == "failed"

        fake_stripe.subscriptions['sub_123'] = stripe_subscription()
        second = await webhook_service.process_stripe_webhook(payload, None)

        assert second['credits_added'] == 300
        assert await WebhookLock(db).get_status("evt_retry") == "completed"
        assert (await get_subscription('sub_123')) is not None

    @pytest.mark.asyncio
    async def test_concurrent_claims_admit_one(self, db):
        lock = WebhookLock(db)
        first = await lock.check_and_mark_webhook_processing("evt_race", "invoice.paid")
        second = await lock.check_and_mark_webhook_processing("evt_race", "invoice.paid")

        assert first == (True, None)
        assert second == (False, "in_progress")

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self, db, credit_manager, fake_stripe):
        service = WebhookService(db, credit_manager, fake_stripe, webhook_secret="whsec_test")

        with pytest.raises(HTTPException) as exc_info:
            await service.process_stripe_webhook(b"{}", "t=1,v1=bad")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unsigned_events_need_opt_in(self, db, credit_manager, fake_stripe):
        service = WebhookService(db, credit_manager, fake_stripe, webhook_secret=None, allow_unsigned=False)

        with pytest.raises(HTTPException) as exc_info:
            await service.process_stripe_webhook(b"{}", None)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_malformed_payload(self, webhook_service):
        with pytest.raises(HTTPException) as exc_info:
            await webhook_service.process_stripe_webhook(b"not json", None)
        assert exc_info.value.status_code == 400
