"""Генерация идентификаторов запросов и заказов"""
import secrets
import time


def _suffix() -> str:
    return secrets.token_hex(5)


def generate_request_id(prefix: str = "req") -> str:
    """Идентификатор запроса вида req_<ms>_<hex>"""
    return f"{prefix}_{int(time.time() * 1000)}_{_suffix()}"


def generate_order_id() -> str:
    """Идентификатор заказа вида order_<ms>_<hex>"""
    return generate_request_id("order")
