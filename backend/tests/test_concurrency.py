"""
Concurrent commits against a file-backed SQLite database.

Each worker runs in its own thread with its own app context (and so its own
session and connection), the way request handlers do.
"""
import os
import tempfile
import threading
import unittest

from retailpos import create_app
from retailpos.errors import InsufficientPointsError, OutOfStockError
from retailpos.extensions import db
from retailpos.models import Member, Product, Sale
from retailpos.services import catalog_service, ledger_service, stock_in_service
from retailpos.services.sales_service import CartLine, SaleRequest, commit_sale


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "EVENTS_ASYNC": False,
            "LOCK_TIMEOUT_SECONDS": 10.0,
            "COMMIT_RETRY_ATTEMPTS": 5,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _product(self, stock, price_cents=1000):
        with self.app.app_context():
            product = catalog_service.create_product(name="Contended", price_cents=price_cents, initial_stock=stock)
            return product.id

    def _run(self, requests):
        """Commit each request on its own thread, released together."""
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(requests))

        def worker(sale_request):
            with self.app.app_context():
                try:
                    barrier.wait(timeout=10)
                    sale = commit_sale(sale_request)
                    with lock:
                        results.append(("ok", sale.id))
                except Exception as exc:
                    with lock:
                        results.append(("error", exc))
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(r,)) for r in requests]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return results

    @staticmethod
    def _cash(product_id, quantity=1, **kwargs):
        return SaleRequest(
            lines=(CartLine(product_id=product_id, quantity=quantity),),
            payment_method="cash",
            tendered_cash_cents=100000,
            **kwargs,
        )

    def test_last_unit_sold_once(self):
        product_id = self._product(stock=1)

        results = self._run([self._cash(product_id), self._cash(product_id)])

        ok = [r for r in results if r[0] == "ok"]
        errors = [r[1] for r in results if r[0] == "error"]
        self.assertEqual(len(ok), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], OutOfStockError)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, product_id).stock, 0)
            self.assertEqual(db.session.query(Sale).count(), 1)
            self.assertTrue(ledger_service.verify_product(product_id).consistent)

    def test_many_buyers_never_oversell(self):
        product_id = self._product(stock=5)

        results = self._run([self._cash(product_id) for _ in range(8)])

        ok = [r for r in results if r[0] == "ok"]
        errors = [r[1] for r in results if r[0] == "error"]
        self.assertEqual(len(ok), 5)
        self.assertEqual(len(errors), 3)
        self.assertTrue(all(isinstance(e, OutOfStockError) for e in errors), errors)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, product_id).stock, 0)
            self.assertEqual(ledger_service.reconcile_all(), [])

    def test_points_redeemed_once(self):
        product_id = self._product(stock=10, price_cents=10000)
        with self.app.app_context():
            member = Member(phone="0811111111", points=100, total_spent_cents=0)
            db.session.add(member)
            db.session.commit()
            member_id = member.id

        results = self._run([
            self._cash(product_id, member_id=member_id, points_to_use=60),
            self._cash(product_id, member_id=member_id, points_to_use=60),
        ])

        errors = [r[1] for r in results if r[0] == "error"]
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], InsufficientPointsError)

        with self.app.app_context():
            member = db.session.get(Member, member_id)
            # 100 - 60 redeemed + floor(4000 / 2000) earned
            self.assertEqual(member.points, 42)

    def test_stock_in_during_sales_keeps_ledger_consistent(self):
        product_id = self._product(stock=3)
        with self.app.app_context():
            doc = stock_in_service.create_document(items=[{"product_id": product_id, "quantity": 4}])
            doc_id = doc.id

        results = []

        def complete():
            with self.app.app_context():
                try:
                    stock_in_service.complete_document(doc_id)
                    results.append("completed")
                finally:
                    db.session.remove()

        receiver = threading.Thread(target=complete)
        receiver.start()
        sales = self._run([self._cash(product_id) for _ in range(3)])
        receiver.join(timeout=60)

        self.assertEqual(results, ["completed"])
        self.assertEqual(len([r for r in sales if r[0] == "ok"]), 3)
        with self.app.app_context():
            self.assertEqual(db.session.get(Product, product_id).stock, 4)
            self.assertTrue(ledger_service.verify_product(product_id).consistent)


if __name__ == "__main__":
    unittest.main()
