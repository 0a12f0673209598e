import math
import signal
import asyncio
import logging
import unittest
from decimal import Decimal, ROUND_HALF_UP

from aiohttp import web

MICRODEGREE = Decimal("0.000001")


def getLogger(name):
    "Logging setup is done in __init__"
    return logging.getLogger(name)

logger = getLogger('utils')


def parse_float(value, default=None):
    """
    Parse form value to float, like a browser's parseFloat but stricter.
    :param value: String, number or None
    :param default: Returned when value is missing, not numeric, or not finite
    :return: float
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, bytes):
        value = value.decode('utf-8', 'replace')
    try:
        f = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        return default
    # nan and inf are not coordinates
    if not math.isfinite(f):
        return default
    return f


def round_coord(deg):
    "Six decimal digits for about 1/9m precision, ties away from zero"
    d = Decimal(repr(float(deg))).quantize(MICRODEGREE, rounding=ROUND_HALF_UP)
    return float(d)


def run_forever(app, host='127.0.0.1', port=5000):
    """
    Serve aiohttp app until SIGINT or SIGTERM, then clean up.
    Convenience function to avoid repetition in entry points.
    """
    l = asyncio.new_event_loop()
    asyncio.set_event_loop(l)

    runner = web.AppRunner(app)
    l.run_until_complete(runner.setup())
    site = web.TCPSite(runner, host, port)
    l.run_until_complete(site.start())
    logger.info("Serving on http://%s:%s", host, port)

    l.add_signal_handler(signal.SIGINT, l.stop)
    l.add_signal_handler(signal.SIGTERM, l.stop)

    l.run_forever()
    logger.info("Loop stopped")

    l.run_until_complete(runner.cleanup())
    l.run_until_complete(l.shutdown_default_executor())
    l.close()
    logger.info("Loop closed")


class LoopTestCase(unittest.TestCase):
    """
    Use self.lru for run_until_complete, self.awrap to pass coroutine functions
    to assertRaises. Every test gets a fresh event loop.
    """
    def setUp(self):
        self.l = asyncio.new_event_loop()
        asyncio.set_event_loop(self.l)
        # Easy access
        self.lru = self.l.run_until_complete
        def raisesWrapper(coro_func):
            "Closure to make it possible to pass coro to assertRaises"
            def f(*args, **kwargs):
                coro = coro_func(*args, **kwargs)
                return self.lru(coro)
            return f
        self.awrap = raisesWrapper

    def tearDown(self):
        # Executor is used to join network threads of publish attempts
        self.lru(self.l.shutdown_default_executor())
        self.l.close()
        asyncio.set_event_loop(None)
