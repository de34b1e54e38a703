"""
Services layer - Business logic goes here.
Keep services focused on specific domains.

DESIGN PRINCIPLE:
- Services contain business logic, NOT routes
- importance_scoring is pure; everything that touches Firestore takes an
  injectable db so it can run against the mock client
"""
