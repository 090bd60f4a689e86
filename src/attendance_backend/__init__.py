"""Face attendance backend: student registry, face matching and attendance tracking."""
