"""Settle pull request review feedback: fix, acknowledge or escalate each thread, then merge."""
