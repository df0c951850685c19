"""
Call relay between a cloud voice platform and browser observers.

Calls arrive from two sources (realtime platform pushes and HTTP webhooks)
and are reconciled into one lifecycle per call id. Every connected browser
receives the same ordered stream of lifecycle notifications, with at most one
`callEnded` per call.
"""
