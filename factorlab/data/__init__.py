"""
Bar data contracts and CSV I/O.

Defines the Bar record and canonical price-frame schema (ascending, strictly
increasing timestamps) and the only CSV readers/writers the engine uses.
"""
