# Supabase table: resources
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: text (primary key, "res_<20 hex>")
- name: text (not null)
- provider: text (not null) - values: digitalocean, hetzner
- provider_account_id: text (not null, key into credentials)
- region, size, image: text (not null)
- tags: jsonb (default: {})
- ssh_keys: jsonb (default: [])
- desired_status: text (not null)
- actual_status: text (not null) - values: pending, provisioning, running, stopping,
  stopped, rebooting, terminating, terminated, error
- state_sync_status: text (not null, default: 'pending') - values: pending, in_sync,
  drifted, unknown
- public_ip, private_ip: text (nullable)
- provider_resource_id: text (nullable) - droplet / server id
- workspace: text (not null) - "resource-<id>"
- firewall_profile_id, bootstrap_profile_id: text (nullable)
- created_at: timestamptz (not null)
- updated_at: timestamptz (nullable)

Collaborator tables (read-only here):
- firewall_profiles: id, name, rules jsonb
  [{direction, protocol, port_range_start, port_range_end, source_addresses, description}]
- bootstrap_profiles: id, name, cloud_init_template text
"""
