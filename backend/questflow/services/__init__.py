# backend/questflow/services/__init__.py
