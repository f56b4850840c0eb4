from sitemetrics.models.counter import CounterDocument, CounterField  # noqa: F401
