"""
Admission control for the chat endpoint.

Design goals:
- Two independent fixed-window quotas (caller address, caller identity).
- Counters live in a shared store (Redis) injected into the limiter.
- Store failures are reported distinctly from quota breaches.
"""
