"""Pure batch domain: DTOs and schedule evaluation."""
