from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_coupon_redeemed() -> None:
    _inc("coupons_redeemed")


def record_coupon_rejected(reason: str) -> None:
    _inc("coupons_rejected")
    _inc(f"coupons_rejected.{reason}")


def record_coupon_conflict() -> None:
    _inc("coupon_usage_conflicts")


def record_contact_message() -> None:
    _inc("contact_messages")


def record_audit_failure() -> None:
    _inc("audit_write_failures")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
