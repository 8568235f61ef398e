"""Provider webhook handling.

Raw provider payloads are turned into canonical events in ``normalizer``
before anything else sees them; ``responses.acknowledge`` decides what the
provider gets back, independently of what happened internally.
"""
