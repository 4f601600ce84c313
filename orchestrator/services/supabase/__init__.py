"""Supabase client factory."""
