"""
Universe screening.

Ranks a symbol universe by weighted factor criteria as of "now".
"""
