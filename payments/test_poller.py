import threading
from io import StringIO
from unittest.mock import Mock, patch

import requests
from django.core.management import call_command
from django.test import SimpleTestCase

from .poller import HttpStatusFetcher, PaymentStatusNotFound, PaymentStatusPoller


class FakeTimer:
    def __init__(self, delay, fn, args=()):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.started = False
        self.cancelled = False
        self.daemon = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn(*self.args)


class PollerTestCase(SimpleTestCase):
    def setUp(self):
        self.now = 0.0
        self.delays = []
        self.timers = []
        self.updates = []
        self.redirects = []

    def wait(self, delay):
        self.delays.append(delay)
        self.now += delay
        return False

    def timer(self, delay, fn, args=()):
        t = FakeTimer(delay, fn, args)
        self.timers.append(t)
        return t

    def make(self, fetch, **kwargs):
        return PaymentStatusPoller(
            "PAY-1",
            fetch,
            on_update=self.updates.append,
            on_redirect=self.redirects.append,
            clock=lambda: self.now,
            wait=kwargs.pop("wait", self.wait),
            timer_factory=self.timer,
            **kwargs,
        )

    @staticmethod
    def sequence(*results):
        results = list(results)

        def fetch(ref):
            item = results.pop(0) if len(results) > 1 else results[0]
            if isinstance(item, Exception):
                raise item
            return {"payment_ref": ref, "status": item, "order_id": "ORD1"}

        return fetch


class PaymentStatusPollerTests(PollerTestCase):
    def test_expires_after_max_wait(self):
        poller = self.make(self.sequence("pending"))

        self.assertEqual(poller.run(), "expired")
        self.assertEqual(self.now, 1800)
        self.assertEqual(poller.polls, 361)
        self.assertEqual(set(self.delays), {5})
        self.assertEqual(self.updates, ["pending", "expired"])
        self.assertEqual(self.timers, [])

    def test_paid_schedules_redirect(self):
        poller = self.make(self.sequence("pending", "paid"))

        self.assertEqual(poller.run(), "paid")
        self.assertEqual(self.updates, ["pending", "paid"])
        self.assertEqual(len(self.timers), 1)
        timer = self.timers[0]
        self.assertEqual(timer.delay, 3)
        self.assertTrue(timer.started)
        self.assertEqual(self.redirects, [])

        timer.fire()
        self.assertEqual(self.redirects[0]["order_id"], "ORD1")

    def test_failed_stops_without_redirect(self):
        poller = self.make(self.sequence("pending", "pending", "failed"))
        self.assertEqual(poller.run(), "failed")
        self.assertEqual(poller.polls, 3)
        self.assertEqual(self.timers, [])

    def test_expired_from_server(self):
        self.assertEqual(self.make(self.sequence("expired")).run(), "expired")

    def test_backoff_on_transient_errors(self):
        err = requests.ConnectionError("offline")
        poller = self.make(self.sequence(err, err, "paid"))

        self.assertEqual(poller.run(), "paid")
        self.assertEqual(self.delays, [5, 10])

    def test_backoff_resets_after_success(self):
        err = requests.Timeout("slow")
        poller = self.make(self.sequence(err, err, "pending", err, "paid"))
        poller.run()
        self.assertEqual(self.delays, [5, 10, 5, 5])

    def test_backoff_is_capped(self):
        poller = self.make(self.sequence(requests.ConnectionError("offline")), max_backoff=20, max_wait=200)
        poller.run()
        self.assertEqual(self.delays[:5], [5, 10, 20, 20, 20])

    def test_errors_until_deadline_end_in_error(self):
        poller = self.make(self.sequence(requests.ConnectionError("offline")), max_wait=100)

        self.assertEqual(poller.run(), "error")
        self.assertEqual(self.delays, [5, 10, 20, 40, 25])
        self.assertIsInstance(poller.last_error, requests.ConnectionError)

    def test_unknown_ref_is_transient(self):
        poller = self.make(self.sequence(PaymentStatusNotFound("PAY-1"), "paid"))
        self.assertEqual(poller.run(), "paid")
        self.assertEqual(self.delays, [5])

    def test_malformed_response_is_transient(self):
        poller = self.make(self.sequence(ValueError("bad json"), "pending", "paid"))
        self.assertEqual(poller.run(), "paid")

    def test_stop_before_run(self):
        fetch = Mock()
        poller = self.make(fetch)
        poller.stop()

        self.assertEqual(poller.run(), "cancelled")
        fetch.assert_not_called()

    def test_stop_while_waiting(self):
        def wait(delay):
            poller.stop()
            return True

        poller = self.make(self.sequence("pending"), wait=wait)
        self.assertEqual(poller.run(), "cancelled")
        self.assertEqual(poller.polls, 1)

    def test_stop_cancels_pending_redirect(self):
        poller = self.make(self.sequence("paid"))
        poller.run()
        poller.stop()
        self.assertTrue(self.timers[0].cancelled)

    def test_stop_racing_redirect_still_cancels_it(self):
        stoppers = []

        def timer(delay, fn, args=()):
            # stop() from another thread while the redirect is being scheduled
            stopper = threading.Thread(target=poller.stop)
            stopper.start()
            stopper.join(0.05)
            stoppers.append(stopper)
            return self.timer(delay, fn, args)

        poller = self.make(self.sequence("paid"))
        poller._timer_factory = timer
        self.assertEqual(poller.run(), "paid")
        stoppers[0].join(2)

        self.assertTrue(poller.stopped)
        self.assertTrue(self.timers[0].started)
        self.assertTrue(self.timers[0].cancelled)

    def test_non_object_body_is_transient(self):
        bodies = [["paid"], "paid", {"status": "paid", "order_id": "ORD1"}]
        poller = self.make(lambda ref: bodies.pop(0))

        self.assertEqual(poller.run(), "paid")
        self.assertEqual(poller.polls, 3)
        self.assertEqual(self.delays, [5, 10])

    def test_background_thread_can_be_cancelled(self):
        poller = PaymentStatusPoller("PAY-1", self.sequence("pending"), interval=0.01)
        poller.start()
        poller.stop()
        poller.join(2)

        self.assertFalse(poller.is_running)
        self.assertEqual(poller.state, "cancelled")


class HttpStatusFetcherTests(SimpleTestCase):
    def response(self, status_code, data=None):
        resp = Mock(status_code=status_code)
        resp.json.return_value = data
        if status_code >= 400:
            resp.raise_for_status.side_effect = requests.HTTPError(str(status_code))
        return resp

    def test_fetches_status_endpoint(self):
        session = Mock()
        session.get.return_value = self.response(200, {"status": "pending"})
        fetch = HttpStatusFetcher("https://shop.test/", session=session)

        self.assertEqual(fetch("PAY-1"), {"status": "pending"})
        url = session.get.call_args.args[0]
        self.assertEqual(url, "https://shop.test/api/payments/PAY-1/status")

    def test_404_raises_not_found(self):
        session = Mock()
        session.get.return_value = self.response(404)
        with self.assertRaises(PaymentStatusNotFound):
            HttpStatusFetcher("https://shop.test", session=session)("PAY-1")

    def test_server_error_raises(self):
        session = Mock()
        session.get.return_value = self.response(503)
        with self.assertRaises(requests.HTTPError):
            HttpStatusFetcher("https://shop.test", session=session)("PAY-1")


class WatchPaymentCommandTests(SimpleTestCase):
    def test_reports_final_state_and_redirect(self):
        fetch = Mock(return_value={"payment_ref": "PAY-1", "status": "paid", "order_id": "ORD1"})
        out = StringIO()
        with patch("payments.management.commands.watch_payment.HttpStatusFetcher", return_value=fetch):
            call_command("watch_payment", "PAY-1", "--redirect-delay", "0", stdout=out)

        fetch.assert_called_with("PAY-1")
        self.assertIn("PAY-1: paid", out.getvalue())
        self.assertIn("Redirect to https://shop.test/api/orders/ORD1", out.getvalue())
        self.assertIn("Final state: paid", out.getvalue())
