# SPDX-License-Identifier: Apache-2.0
"""
Registry Protocol Suite Tests

Conformance tests for the Service Registry Protocol engine (filtering,
pagination, caching, async operations) and for the etcd, Cloud Map and
Service Directory adapters driven by fake vendor clients.
"""
