"""microfeed – a minimal social posting panel."""
