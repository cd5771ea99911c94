"""Trip & Schedule Orchestration Engine.

Turns recurring or one-time transportation plans into trackable trips,
gates trip start on passenger boarding, records attendance and fans out
notifications as trips change state.
"""

__version__ = "1.0.0"
