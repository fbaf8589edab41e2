"""Remote source of truth (Supabase)."""
