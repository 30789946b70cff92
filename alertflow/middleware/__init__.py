# alertflow/middleware/__init__.py
