"""CRM credential lifecycle management and metered export job orchestration."""
