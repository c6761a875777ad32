"""
Strategy definitions and evaluation.

Strategies are named entries in a registry; each is a set of weighted factor
criteria that the evaluator turns into a ranked target allocation.
"""
