import asyncio
import inspect


async def _after_yield(awaitable):
    await asyncio.sleep(0)
    return await awaitable


class YieldingCollection:
    """Collection proxy that hands control back to the event loop before each call.

    The in-memory Motor double runs every operation without suspending, so
    concurrent coroutines would otherwise execute one after another.
    """

    def __init__(self, collection):
        self._collection = collection

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            result = attr(*args, **kwargs)
            if inspect.isawaitable(result):
                return _after_yield(result)
            return result

        return call


class YieldingDatabase:
    def __init__(self, db):
        self._db = db

    def __getattr__(self, name):
        return YieldingCollection(getattr(self._db, name))

    def __getitem__(self, name):
        return YieldingCollection(self._db[name])
