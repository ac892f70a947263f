"""Device-side components: sensor sampling, anomaly detection and delivery."""
