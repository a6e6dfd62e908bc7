"""ORM models"""
