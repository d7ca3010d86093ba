"""cursor-guard: keep a struggling Electron IDE responsive on weak hardware."""
