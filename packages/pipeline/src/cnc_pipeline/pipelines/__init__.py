"""
cnc_pipeline.pipelines — End-to-end pipeline orchestrators.

The acquisition module exports a run() async function that resolves
regions and periods from settings and returns a BatchReport.

    from cnc_pipeline.pipelines import acquisition

    report = await acquisition.run("peic", period_spec="01/2025:>")
"""
