# Supabase table: deployments
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: text (primary key, "dep_<12 hex>")
- resource_id: text (foreign key to resources.id, not null)
- type: text (not null) - values: create, reboot, destroy, refresh
- state: text (not null) - values: queued, planning, awaiting_approval, applying,
  succeeded, failed, cancelled
- workspace: text (nullable)
- initiated_by: text (not null, default: 'system')
- plan_summary: jsonb (nullable)
- plan_artifact: text (nullable)
- outputs: jsonb (nullable)
- error_message: text (nullable, bounded by settings.error_message_max_length)
- error_code: text (nullable)
- logs: jsonb (not null, default: []) - array of log envelopes:
  {deployment_id, sequence, level, message, source, timestamp}
- created_at: timestamptz (not null)
- started_at: timestamptz (nullable)
- finished_at: timestamptz (nullable)
- updated_at: timestamptz (nullable)

Supabase table: credentials
- provider_account_id: text (primary key)
- encrypted_data: text (not null) - Fernet token
- updated_at: timestamptz
"""
