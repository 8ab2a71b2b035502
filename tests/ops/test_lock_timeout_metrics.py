import gc
import threading
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.surplus.core.error_catalog import AppError
from app.surplus.core.errors import setup_exception_handlers
from app.surplus.core.metrics import metrics
from app.surplus.services import ledger
from app.surplus.services.ledger import material_lock


def test_driver_lock_timeout_maps_to_lock_timeout_and_metric():
    metrics.reset()
    app = FastAPI()
    setup_exception_handlers(app)

    @app.get("/lock-timeout")
    def lock_timeout():
        raise OperationalError("UPDATE materials", {}, Exception("database is locked"))

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/lock-timeout")

    assert response.status_code == 409
    assert response.json()["code"] == "LOCK_TIMEOUT"

    content = metrics.render().content.decode("utf-8")
    if metrics.enabled:
        assert "lock_wait_timeout_total 1.0" in content
    else:
        assert "metrics_disabled" in content


def test_unhandled_error_maps_to_internal_error():
    app = FastAPI()
    setup_exception_handlers(app)

    @app.get("/boom")
    def boom():
        raise RuntimeError("boom")

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/boom")

    assert response.status_code == 500
    assert response.json()["code"] == "INTERNAL_ERROR"
    assert response.json()["details"] == {"type": "RuntimeError"}


def test_material_lock_wait_times_out():
    metrics.reset()
    material_id = "material-lock-timeout"
    holding = threading.Event()
    done = threading.Event()

    def hold_lock():
        with material_lock(material_id):
            holding.set()
            done.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    try:
        assert holding.wait(timeout=5)
        with pytest.raises(AppError) as exc:
            with material_lock(material_id, timeout=0.05):
                pass
        assert exc.value.error.code == "LOCK_TIMEOUT"
        assert exc.value.retryable is True
    finally:
        done.set()
        holder.join(timeout=5)

    with material_lock(material_id, timeout=0.05):
        pass

    if metrics.enabled:
        assert "lock_wait_timeout_total 1.0" in metrics.render().content.decode("utf-8")


def test_material_lock_key_is_normalised_across_id_spellings():
    material_id = uuid.uuid4()
    holding = threading.Event()
    done = threading.Event()

    def hold_lock():
        with material_lock(material_id.hex.upper()):
            holding.set()
            done.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    try:
        assert holding.wait(timeout=5)
        for spelling in (material_id, str(material_id)):
            with pytest.raises(AppError) as exc:
                with material_lock(spelling, timeout=0.05):
                    pass
            assert exc.value.details == {"material_id": str(material_id)}
    finally:
        done.set()
        holder.join(timeout=5)


def test_material_locks_are_dropped_once_unused():
    material_id = uuid.uuid4()
    with material_lock(material_id):
        assert str(material_id) in ledger._locks
    gc.collect()
    assert str(material_id) not in ledger._locks
